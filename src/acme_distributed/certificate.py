"""Certificates managed by a run, and their on-disk state."""

import math
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, PrivateAttr

from acme_distributed._logging import get_logger
from acme_distributed.crypto import certificate_not_after

logger = get_logger(__name__)

_SECONDS_PER_DAY = 86400


class Certificate(BaseModel):
    """A certificate to be kept valid.

    Path fields are already expanded. The remaining lifetime is read from
    the existing PEM file on first use and cached for the rest of the run.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    subject: str
    san: tuple[str, ...] = ()
    key: Path
    path: Path
    renew_days: int
    connector_group: str | None = None
    key_size: int = 2048

    _lifetime: int | None = PrivateAttr(default=None)
    _lifetime_known: bool = PrivateAttr(default=False)

    @property
    def subjects(self) -> list[str]:
        """All names of the certificate: the common name first, then SANs.

        Names are lower-cased and duplicates removed, keeping first
        occurrence order.
        """
        names = [self.subject, *self.san]
        return list(dict.fromkeys(name.lower() for name in names))

    def pem_exists(self) -> bool:
        return self.path.is_file()

    def key_exists(self) -> bool:
        return self.key.is_file()

    def key_readable(self) -> bool:
        return self.key_exists() and os.access(self.key, os.R_OK)

    def pem_writable(self) -> bool:
        """Whether the PEM file can be (re)written.

        An existing file must be writable; otherwise its directory must be.
        """
        if self.path.exists():
            return self.path.is_file() and os.access(self.path, os.W_OK)
        parent = self.path.parent
        return parent.is_dir() and os.access(parent, os.W_OK)

    def remaining_lifetime(self, cached: bool = True, now: datetime | None = None) -> int | None:
        """Whole days until the current certificate expires.

        Args:
            cached: Reuse the value computed earlier in this run.
            now: Reference time, the current time by default.

        Returns:
            Days left (rounded down, negative once expired), or None if no
            certificate has been issued yet.

        Raises:
            ValueError: If the PEM file does not hold a certificate.
        """
        if cached and self._lifetime_known:
            return self._lifetime

        if not self.pem_exists():
            lifetime = None
        else:
            not_after = certificate_not_after(self.path.read_bytes())
            now = now or datetime.now(timezone.utc)
            lifetime = math.floor((not_after - now).total_seconds() / _SECONDS_PER_DAY)

        self._lifetime = lifetime
        self._lifetime_known = True
        return lifetime

    def renewable(self, now: datetime | None = None) -> bool:
        """Whether the certificate should be (re)issued in this run."""
        lifetime = self.remaining_lifetime(now=now)
        if lifetime is None:
            return True
        return lifetime <= self.renew_days

    def write_pem(self, pem: bytes) -> None:
        """Replace the PEM file atomically.

        The data is written to a temporary file in the same directory and
        renamed over the target, so readers never see a partial file.

        Raises:
            OSError: If the file cannot be written.
        """
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(pem)
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        # Lifetime changed with the new certificate
        self._lifetime_known = False
        logger.debug(
            "Certificate written", extra={"certificate": self.name, "path": str(self.path)}
        )
