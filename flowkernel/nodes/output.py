from __future__ import annotations

import csv
import html
import io
import json
import time
from datetime import datetime
from typing import Any, Dict, Sequence

from flowkernel.nodes.base import NodeProcessor, write_output_file
from flowkernel.service.context import ExecutionContext
from flowkernel.service.variables import to_display

FORMAT_EXTENSIONS = {
    "json": ".json",
    "text": ".txt",
    "markdown": ".md",
    "html": ".html",
    "csv": ".csv",
}

FORMAT_MIME_TYPES = {
    "json": "application/json",
    "text": "text/plain",
    "markdown": "text/markdown",
    "html": "text/html",
    "csv": "text/csv",
}

# Formats that always produce a file
FILE_FORMATS = ("html", "csv")

_FORMAT_INSTRUCTIONS = {
    "text": "Write plain text without any markup.",
    "json": "Respond with valid JSON only; the output must parse.",
    "markdown": "Write Markdown; headings, lists and code blocks are welcome.",
    "html": "Write an HTML fragment with appropriate structure.",
    "csv": "Write CSV with a header row and comma separated columns.",
}


def replace_file_name_variables(file_name: str, context: ExecutionContext, now: datetime | None = None) -> str:
    """Expand the built-in ``{{日期}}``/``{{时间}}``/``{{时间戳}}``/``{{执行ID}}`` names, then node references."""
    moment = now or datetime.now()
    expanded = (
        file_name.replace("{{日期}}", moment.strftime("%Y-%m-%d"))
        .replace("{{时间}}", moment.strftime("%H-%M-%S"))
        .replace("{{时间戳}}", str(int(time.time() * 1000)))
        .replace("{{执行ID}}", context.execution_id[:8])
    )
    return context.resolve(expanded)


def _to_text(data: Dict[str, Any], indent: str = "") -> str:
    lines = []
    for key, value in data.items():
        if isinstance(value, dict):
            lines.append(f"{indent}{key}:")
            lines.append(_to_text(value, indent + "  "))
        else:
            lines.append(f"{indent}{key}: {to_display(value)}")
    return "\n".join(line for line in lines if line)


def _to_markdown(data: Dict[str, Any], level: int = 1) -> str:
    heading = "#" * min(level, 6)
    parts = []
    for key, value in data.items():
        if isinstance(value, dict):
            parts.append(f"{heading} {key}\n\n{_to_markdown(value, level + 1)}")
        elif isinstance(value, list):
            items = "\n".join(f"- {to_display(item)}" for item in value)
            parts.append(f"{heading} {key}\n\n{items}\n")
        else:
            parts.append(f"**{key}**: {to_display(value)}\n")
    return "\n".join(parts)


def _to_html(data: Dict[str, Any]) -> str:
    sections = []
    for key, value in data.items():
        body = json.dumps(value, ensure_ascii=False, indent=2, default=str)
        sections.append(f"<section><h2>{html.escape(str(key))}</h2><pre>{html.escape(body)}</pre></section>")
    return (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\"><title>Workflow output</title></head>"
        f"<body>{''.join(sections)}</body></html>"
    )


def _to_csv(data: Dict[str, Any]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["node", "field", "value"])
    for name, output in data.items():
        if isinstance(output, dict):
            for key, value in output.items():
                writer.writerow([name, key, to_display(value)])
        else:
            writer.writerow([name, "", to_display(output)])
    return buffer.getvalue()


def format_outputs(data: Dict[str, Any], format: str) -> str:
    if format == "text":
        return _to_text(data)
    if format == "markdown":
        return _to_markdown(data)
    if format == "html":
        return _to_html(data)
    if format == "csv":
        return _to_csv(data)
    return json.dumps(data, ensure_ascii=False, indent=2, default=str)


class OutputProcessor(NodeProcessor):
    """Collects final values and optionally writes them to a file."""

    node_type = "OUTPUT"

    def _collected(self, node, context: ExecutionContext) -> Dict[str, Any]:
        outputs = context.successful_outputs()
        wanted = node.config.include_nodes
        if not wanted:
            return outputs
        selected: Dict[str, Any] = {}
        for reference in wanted:
            node_id = context.node_names.get(reference, reference)
            name = next((n for n, i in context.node_names.items() if i == node_id), node_id)
            if name in outputs:
                selected[name] = outputs[name]
        return selected

    async def _generate(self, node, context: ExecutionContext, prompt: str, collected: Dict[str, Any]):
        config = node.config
        system = "You are a content generation assistant. " + _FORMAT_INSTRUCTIONS.get(config.format, "")
        upstream = json.dumps(collected, ensure_ascii=False, indent=2, default=str)
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": f"{prompt}\n\nUpstream results:\n{upstream}"},
        ]
        return await self.services.ai.chat(
            context, messages, config_id=config.ai_config_id, model=config.model
        )

    async def run(self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()):
        config = node.config
        collected = self._collected(node, context)
        usage: Dict[str, Any] = {}
        prompt = context.resolve(config.prompt or "")
        if config.template:
            content = context.resolve(config.template)
            source = "template"
        elif prompt.strip() and self.services.ai is not None:
            generated = await self._generate(node, context, prompt, collected)
            content = generated.content
            usage = {
                "model": generated.model,
                "prompt_tokens": generated.prompt_tokens,
                "completion_tokens": generated.completion_tokens,
            }
            source = "ai"
        else:
            content = format_outputs(collected, config.format)
            source = "upstream"

        files = []
        if config.write_file or config.file_name or config.format in FILE_FORMATS:
            base = replace_file_name_variables(config.file_name or f"{node.label}-{{{{执行ID}}}}", context)
            extension = FORMAT_EXTENSIONS[config.format]
            file_name = base if base.lower().endswith(extension) else base + extension
            record = write_output_file(
                self.services,
                context,
                node,
                file_name,
                content,
                format=config.format,
                mime_type=FORMAT_MIME_TYPES[config.format],
            )
            files.append(record.to_dict())

        data = {
            "result": content,
            "结果": content,
            "content": content,
            "format": config.format,
            "source": source,
            "files": files,
        }
        return self.success(node, data, **usage)
