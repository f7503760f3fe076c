from .config import DEFAULT_CONFIG
from .coordinator import Coordinator
from .models import (
    Contact,
    PipelineRun,
    PipelineStage,
    PipelineState,
    ProxyProtocol,
    ProxyRecord,
    ProxyStatus,
    ScrapeJob,
)

__all__ = [
    "DEFAULT_CONFIG",
    "Coordinator",
    "Contact",
    "PipelineRun",
    "PipelineStage",
    "PipelineState",
    "ProxyProtocol",
    "ProxyRecord",
    "ProxyStatus",
    "ScrapeJob",
]
