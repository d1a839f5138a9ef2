from .base import BaseCollector, CollectorResult, FetchAborted, FetchRequest
from .roles import RoleCollector
from .credentials import AppCredentialCollector
from .defender import DefenderCollector
from .teams import TeamsCollector
from .agreements import AgreementsCollector
from .usage import UsageReportCollector

__all__ = [
    "BaseCollector",
    "CollectorResult",
    "FetchAborted",
    "FetchRequest",
    "RoleCollector",
    "AppCredentialCollector",
    "DefenderCollector",
    "TeamsCollector",
    "AgreementsCollector",
    "UsageReportCollector",
]
