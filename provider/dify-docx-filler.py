import logging
from typing import Any

from dify_plugin import ToolProvider
from dify_plugin.config.logger_format import plugin_logger_handler

# Initialize logging
logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)
logger.addHandler(plugin_logger_handler)


class DifyDocxFillerProvider(ToolProvider):
    def _validate_credentials(self, credentials: dict[str, Any]) -> None:
        """
        The DOCX filler works on user-uploaded templates locally and has no
        credentials to validate.
        """
        logger.info("[DifyDocxFillerProvider] Validating credentials - no external credentials required")
