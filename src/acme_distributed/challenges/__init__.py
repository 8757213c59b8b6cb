"""ACME challenge helpers."""

from acme_distributed.challenges.base import compute_key_authorization
from acme_distributed.challenges.dns01 import RECORD_LABEL, compute_dns_txt_value

__all__ = [
    "RECORD_LABEL",
    "compute_dns_txt_value",
    "compute_key_authorization",
]
