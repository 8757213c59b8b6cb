"""acme_distributed - ACME certificate issuance with challenges distributed over SSH."""

from acme_distributed.client import AcmeClient
from acme_distributed.config import Config, load_config
from acme_distributed.orchestrator import ChallengeOrchestrator
from acme_distributed.runner import Runner, RunOptions

__all__ = [
    "AcmeClient",
    "ChallengeOrchestrator",
    "Config",
    "RunOptions",
    "Runner",
    "load_config",
]
__version__ = "0.2.0"
