from .config import Settings, get_settings
from .logging import configure_logging, get_logger, workflow_log_context

__all__ = ["Settings", "configure_logging", "get_logger", "get_settings", "workflow_log_context"]
