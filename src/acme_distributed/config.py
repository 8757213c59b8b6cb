"""Configuration management for acme_distributed.

Loads the YAML configuration file and validates it with Pydantic models.
All models are frozen: they are built once per run and never mutated.
"""

from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from acme_distributed._logging import get_logger
from acme_distributed.certificate import Certificate
from acme_distributed.exceptions import ConfigurationError
from acme_distributed.retry import DEFAULT_RETRIES
from acme_distributed.variables import expand_variables

logger = get_logger(__name__)

DEFAULT_RENEW_DAYS = 30

ConnectorType = Literal["ssh_http_file", "ssh_dns_unbound"]


def _with_names(entries: Any) -> Any:
    """Copy map keys into a 'name' field of each (dict) entry."""
    if not isinstance(entries, dict):
        return entries
    return {
        name: {**entry, "name": name} if isinstance(entry, dict) else entry
        for name, entry in entries.items()
    }


class Defaults(BaseModel):
    """The optional 'defaults' section."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    endpoint: str | None = None
    renew_days: Annotated[int, Field(ge=0)] | None = None
    connector_group: str | None = None


class Endpoint(BaseModel):
    """An ACME endpoint (directory URL plus account)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    url: str
    private_key: Path
    email_addr: str
    timeout_retries: Annotated[int, Field(ge=0)] = DEFAULT_RETRIES
    key_size: Annotated[int, Field(ge=2048)] = 4096
    ca_cert: str | bool | None = None

    def key_exists(self) -> bool:
        """Whether the account key exists and is a regular file."""
        return self.private_key.is_file()


class SshConnectorConfig(BaseModel):
    """Settings common to all SSH based connectors."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    hostname: str
    username: str
    ssh_port: Annotated[int, Field(ge=1, le=65535)] = 22
    timeout: Annotated[float, Field(gt=0)] = 2.0


class HttpFileConnectorConfig(SshConnectorConfig):
    """Connector writing HTTP-01 challenge files into a web root."""

    type: Literal["ssh_http_file"] = "ssh_http_file"
    acme_path: str


class DnsUnboundConnectorConfig(SshConnectorConfig):
    """Connector adding DNS-01 TXT records with unbound-control."""

    type: Literal["ssh_dns_unbound"] = "ssh_dns_unbound"
    unbound_ctrl: str
    ttl: Annotated[int, Field(ge=1)] = 5


ConnectorConfig = Annotated[
    HttpFileConnectorConfig | DnsUnboundConnectorConfig,
    Field(discriminator="type"),
]


class ConnectorGroupConfig(BaseModel):
    """A named group of connectors sharing one connector type."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    type: ConnectorType
    connectors: Annotated[tuple[ConnectorConfig, ...], Field(min_length=1)]

    @model_validator(mode="before")
    @classmethod
    def _apply_group_type(cls, data: Any) -> Any:
        # The group's type selects the model of every connector entry
        if isinstance(data, dict) and isinstance(data.get("connectors"), list):
            data = {
                **data,
                "connectors": [
                    {**entry, "type": data.get("type")} if isinstance(entry, dict) else entry
                    for entry in data["connectors"]
                ],
            }
        return data

    @field_validator("connectors")
    @classmethod
    def _unique_names(cls, connectors: tuple) -> tuple:
        names = [c.name for c in connectors]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate connector names: {', '.join(duplicates)}")
        return connectors


class CertificateConfig(BaseModel):
    """A certificate as written in the configuration (templates unexpanded)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    subject: str
    san: tuple[str, ...] = ()
    key: str
    path: str
    renew_days: Annotated[int, Field(ge=0)] | None = None
    connector_group: str | None = None
    key_size: Annotated[int, Field(ge=2048)] = 2048


class Config(BaseModel):
    """Root configuration model."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    filename: str | None = None
    defaults: Defaults = Defaults()
    endpoints: dict[str, Endpoint]
    certificate_configs: dict[str, CertificateConfig] = Field(alias="certificates")
    connector_groups: dict[str, ConnectorGroupConfig] = Field(
        validation_alias=AliasChoices("connectors", "connector_groups"),
    )

    @model_validator(mode="before")
    @classmethod
    def _name_entries(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key in ("endpoints", "certificates", "connectors", "connector_groups"):
            if key in data:
                data[key] = _with_names(data[key])
        return data

    @model_validator(mode="after")
    def _check_references(self) -> "Config":
        default_group = self.defaults.connector_group
        if default_group and default_group not in self.connector_groups:
            raise ValueError(f"default connector group '{default_group}' does not exist")
        for cert in self.certificate_configs.values():
            group = cert.connector_group or default_group
            if not group:
                raise ValueError(
                    f"certificate '{cert.name}' has no connector group and no default is set"
                )
            if group not in self.connector_groups:
                raise ValueError(
                    f"certificate '{cert.name}' references connector group '{group}', "
                    "which does not exist"
                )
        return self

    def select_endpoint(self, name: str | None = None) -> Endpoint:
        """Pick the endpoint for this run.

        The name given (usually from the command line) wins over the
        configured default. The endpoint's key path is expanded.

        Raises:
            ConfigurationError: If no endpoint is given and no default is
                set, or the endpoint does not exist.
        """
        name = name or self.defaults.endpoint
        if not name:
            raise ConfigurationError(
                "Endpoint is not specified and no default is set in configuration."
            )
        if name not in self.endpoints:
            raise ConfigurationError(
                f"Endpoint '{name}' requested, but no such endpoint configured."
            )
        endpoint = self.endpoints[name]
        private_key = expand_variables(str(endpoint.private_key), {"endpoint": endpoint.name})
        return endpoint.model_copy(update={"private_key": Path(private_key)})

    def renew_days(self, override: int | None = None) -> int:
        """Global renewal threshold: override > defaults > built-in."""
        if override is not None:
            return override
        if self.defaults.renew_days is not None:
            return self.defaults.renew_days
        return DEFAULT_RENEW_DAYS

    def build_certificates(
        self, endpoint: Endpoint, renew_days: int | None = None
    ) -> list[Certificate]:
        """Build the certificates for a run against an endpoint.

        Path templates are expanded once here; per-certificate renew_days
        apply unless an override is given.

        Args:
            endpoint: The endpoint selected for this run.
            renew_days: Run-wide override of every renewal threshold.

        Returns:
            Certificates in configuration order.
        """
        variables = {"endpoint": endpoint.name}
        global_days = self.renew_days()
        certificates = []
        for cfg in self.certificate_configs.values():
            if renew_days is not None:
                days = renew_days
            elif cfg.renew_days is not None:
                days = cfg.renew_days
            else:
                days = global_days
            certificate = Certificate(
                name=cfg.name,
                subject=cfg.subject,
                san=cfg.san,
                key=Path(expand_variables(cfg.key, variables)),
                path=Path(expand_variables(cfg.path, variables)),
                renew_days=days,
                connector_group=cfg.connector_group or self.defaults.connector_group,
                key_size=cfg.key_size,
            )
            logger.debug(
                "Certificate configured",
                extra={
                    "certificate": certificate.name,
                    "subject": certificate.subject,
                    "san_entries": len(certificate.san),
                    "renew_days": certificate.renew_days,
                    "path": str(certificate.path),
                },
            )
            certificates.append(certificate)
        return certificates


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"])
        parts.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(parts)


def load_config(config_path: Path | str) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration YAML file.

    Returns:
        Validated Config instance.

    Raises:
        ConfigurationError: If the file cannot be read, is not valid
            YAML, or does not match the configuration schema.
    """
    path = Path(config_path)
    logger.info("Loading configuration", extra={"config_file": str(path)})
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"(file={path}) cannot read configuration: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"(file={path}) invalid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"(file={path}) configuration must be a map")

    for section in ("endpoints", "certificates"):
        if not isinstance(data.get(section), dict):
            raise ConfigurationError(
                f"(file={path}) {section} section missing or invalid (must be map)"
            )
    if not isinstance(data.get("connectors", data.get("connector_groups")), dict):
        raise ConfigurationError(
            f"(file={path}) connectors section missing or invalid (must be map)"
        )

    try:
        config = Config.model_validate({**data, "filename": str(path)})
    except ValidationError as e:
        raise ConfigurationError(f"(file={path}) {_format_validation_error(e)}") from e

    for group in config.connector_groups.values():
        for connector in group.connectors:
            if connector.username == "root":
                logger.warning(
                    "User 'root' should not be used for connectors",
                    extra={"connector": connector.name, "hostname": connector.hostname},
                )

    logger.debug(
        "Configuration loaded",
        extra={
            "endpoints": len(config.endpoints),
            "certificates": len(config.certificate_configs),
            "connector_groups": len(config.connector_groups),
        },
    )
    return config
