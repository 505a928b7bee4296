import json
import logging
import os
import tempfile
from collections.abc import Generator
from typing import Any

from dify_plugin import Tool
from dify_plugin.entities.tool import ToolInvokeMessage
from dify_plugin.config.logger_format import plugin_logger_handler
from dify_plugin.file.file import File
from utils.docx_package import DocxPackage
from utils.docx_placeholder_filler import DocxPlaceholderFiller
from utils.fill_errors import DocxFillError, MissingKeysError
from utils.fill_options import FillOptions

# Initialize logging
logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)
logger.addHandler(plugin_logger_handler)

DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class FillDocxTemplateTool(Tool):
    """
    Fill <!key!> placeholders of a DOCX template with supplied values.

    Placeholders split across formatting runs are handled; all run formatting,
    styles and layout of the template are kept.
    """

    def _invoke(self, tool_parameters: dict[str, Any]) -> Generator[ToolInvokeMessage, None, None]:
        logger.info("[FillDocxTemplate] Starting template fill")
        warnings: list[str] = []
        try:
            template_file: File = tool_parameters.get("template_file")
            template_url = tool_parameters.get("template_url", "")

            try:
                values = parse_values(tool_parameters.get("values"))
                options = build_options(tool_parameters, warnings.append)
            except ValueError as e:
                logger.error(f"[FillDocxTemplate] Invalid parameters: {e}")
                yield self.create_text_message(f"Error: {e}")
                return

            template_data, template_name = load_template(template_file, template_url)
            if not template_data:
                logger.error("[FillDocxTemplate] No template provided")
                yield self.create_text_message("Error: A DOCX template must be uploaded or given as template_url.")
                return
            if not DocxPackage.detect_docx(template_data):
                logger.error("[FillDocxTemplate] Template is not a DOCX file")
                yield self.create_text_message("Error: The template is not a valid DOCX file.")
                return
            logger.info(f"[FillDocxTemplate] Template loaded - {template_name}, {len(template_data)} bytes, {len(values)} values")

            yield self.create_text_message(
                f"Filling {template_name} with {len(values)} values (missing keys: {options.missing_key_policy.value})"
            )

            with tempfile.TemporaryDirectory(prefix="docx-filler-tool-") as workdir:
                template_path = os.path.join(workdir, "template.docx")
                output_path = os.path.join(workdir, "filled.docx")
                with open(template_path, "wb") as handle:
                    handle.write(template_data)

                report = DocxPlaceholderFiller().fill(template_path, output_path, values, options)

                with open(output_path, "rb") as handle:
                    output_data = handle.read()

            output_filename = tool_parameters.get("output_filename") or generate_filled_filename(template_name)
            logger.info(f"[FillDocxTemplate] Fill completed - {report.replacements_count} replacements, "
                        f"missing: {sorted(report.missing_keys)}, output: {output_filename}")

            for warning in warnings:
                yield self.create_text_message(f"Warning: {warning}")
            yield self.create_text_message(
                f"Replaced {report.replacements_count} placeholders in {len(report.processed_parts)} parts"
            )
            yield self.create_blob_message(
                output_data,
                meta={"mime_type": DOCX_MIME_TYPE, "filename": output_filename},
            )

            result = {
                "success": True,
                "output_filename": output_filename,
                "file_size_mb": round(len(output_data) / (1024 * 1024), 2),
                "report": report.to_dict(),
                "warnings": warnings,
            }
            yield self.create_json_message(result)
            yield self.create_variable_message("fill_result", json.dumps(result))

        except MissingKeysError as e:
            logger.error(f"[FillDocxTemplate] Missing values: {e.keys}")
            yield self.create_text_message(f"Error: {e}")
            yield self.create_json_message({"success": False, "error": str(e), "missing_keys": e.keys, "warnings": warnings})
        except DocxFillError as e:
            logger.error(f"[FillDocxTemplate] Fill failed: {e}")
            yield self.create_text_message(f"Error: {e}")
            yield self.create_json_message({"success": False, "error": str(e), "warnings": warnings})
        except Exception as e:
            error_msg = f"Failed to fill template: {str(e)}"
            logger.error(f"[FillDocxTemplate] Exception occurred: {error_msg}")
            yield self.create_text_message(f"Error: {error_msg}")
            yield self.create_json_message({"success": False, "error": error_msg, "warnings": warnings})


def load_template(template_file: File, template_url: str) -> tuple[bytes, str]:
    """Get template bytes from the uploaded file, or download them from template_url."""
    if template_file is not None and getattr(template_file, "blob", None):
        logger.debug(f"[FillDocxTemplate] Using uploaded template: {template_file.filename}")
        return template_file.blob, template_file.filename or "template.docx"
    if template_url:
        logger.info(f"[FillDocxTemplate] Downloading template from {template_url}")
        name = template_url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1] or "template.docx"
        return DocxPackage.download_template(template_url), name
    return b"", ""


def parse_values(raw: Any) -> dict[str, str]:
    """
    Turn the ``values`` tool parameter into a key -> string mapping.

    Accepts a JSON object string or a dict. Numbers and booleans are converted
    to strings; null values are dropped so the key counts as missing.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"values must be a JSON object: {e}")
    if not isinstance(raw, dict):
        raise ValueError("values must be a JSON object mapping placeholder keys to text")

    values = {}
    for key, value in raw.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif isinstance(value, (int, float)):
            value = str(value)
        elif not isinstance(value, str):
            raise ValueError(f"value for {key!r} must be text, got {type(value).__name__}")
        values[str(key)] = value
    return values


def build_options(tool_parameters: dict[str, Any], on_warning) -> FillOptions:
    def flag(name: str, default: bool) -> bool:
        value = tool_parameters.get(name)
        return default if value is None else bool(value)

    return FillOptions(
        include_footnotes=flag("include_footnotes", True),
        include_endnotes=flag("include_endnotes", True),
        include_comments=flag("include_comments", True),
        selection=tool_parameters.get("selection") or "standard",
        missing_key_policy=tool_parameters.get("missing_key_policy") or "keep",
        preserve_whitespace_when_needed=flag("preserve_whitespace_when_needed", True),
        include_field_instruction_text=flag("include_field_instruction_text", False),
        sanitize_values=flag("sanitize_values", True),
        on_warning=on_warning,
    )


def generate_filled_filename(original_filename: str) -> str:
    if "." in original_filename:
        name, ext = original_filename.rsplit(".", 1)
        return f"{name}_filled.{ext}"
    return f"{original_filename}_filled.docx"
