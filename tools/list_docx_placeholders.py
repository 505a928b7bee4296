import logging
import os
import tempfile
from collections.abc import Generator
from typing import Any

from dify_plugin import Tool
from dify_plugin.entities.tool import ToolInvokeMessage
from dify_plugin.config.logger_format import plugin_logger_handler
from dify_plugin.file.file import File
from tools.fill_docx_template import build_options, load_template
from utils.docx_package import DocxPackage
from utils.docx_placeholder_filler import DocxPlaceholderFiller
from utils.fill_errors import DocxFillError

# Initialize logging
logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)
logger.addHandler(plugin_logger_handler)


class ListDocxPlaceholdersTool(Tool):
    """
    List the <!key!> placeholders a DOCX template expects.

    Nothing is written; the result tells a workflow which values to collect
    before running fill_docx_template.
    """

    def _invoke(self, tool_parameters: dict[str, Any]) -> Generator[ToolInvokeMessage, None, None]:
        logger.info("[ListDocxPlaceholders] Starting placeholder scan")
        warnings: list[str] = []
        try:
            template_file: File = tool_parameters.get("template_file")
            template_url = tool_parameters.get("template_url", "")

            try:
                options = build_options(tool_parameters, warnings.append)
            except ValueError as e:
                logger.error(f"[ListDocxPlaceholders] Invalid parameters: {e}")
                yield self.create_text_message(f"Error: {e}")
                return

            template_data, template_name = load_template(template_file, template_url)
            if not template_data or not DocxPackage.detect_docx(template_data):
                logger.error("[ListDocxPlaceholders] Missing or invalid DOCX template")
                yield self.create_text_message("Error: A valid DOCX template must be uploaded or given as template_url.")
                return

            with tempfile.TemporaryDirectory(prefix="docx-filler-tool-") as workdir:
                template_path = os.path.join(workdir, "template.docx")
                with open(template_path, "wb") as handle:
                    handle.write(template_data)
                report = DocxPlaceholderFiller().scan(template_path, options)

            keys = sorted(report.found_keys)
            logger.info(f"[ListDocxPlaceholders] {template_name}: {len(keys)} placeholders found")
            for warning in warnings:
                yield self.create_text_message(f"Warning: {warning}")
            yield self.create_text_message(f"Found {len(keys)} placeholders in {template_name}")
            yield self.create_json_message({
                "success": True,
                "template_filename": template_name,
                "placeholders": keys,
                "warnings": warnings,
            })

        except DocxFillError as e:
            logger.error(f"[ListDocxPlaceholders] Scan failed: {e}")
            yield self.create_text_message(f"Error: {e}")
            yield self.create_json_message({"success": False, "error": str(e), "warnings": warnings})
        except Exception as e:
            error_msg = f"Failed to scan template: {str(e)}"
            logger.error(f"[ListDocxPlaceholders] Exception occurred: {error_msg}")
            yield self.create_text_message(f"Error: {error_msg}")
            yield self.create_json_message({"success": False, "error": error_msg, "warnings": warnings})
