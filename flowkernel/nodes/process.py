from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from flowkernel.logging import get_logger
from flowkernel.nodes.base import NodeProcessor, write_output_file
from flowkernel.service.context import ExecutionContext
from flowkernel.service.errors import NodeError

logger = get_logger(__name__)

_AUDIO_MIME_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "opus": "audio/opus",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "txt": "text/plain",
}


def _build_system_prompt(context: ExecutionContext, config) -> str:
    system = context.resolve(config.system_prompt or "")
    knowledge = [
        f"## {item.name or 'Knowledge'}\n{context.resolve(item.content)}"
        for item in config.knowledge_items
        if (item.content or "").strip()
    ]
    if knowledge:
        block = "Reference knowledge:\n\n" + "\n\n".join(knowledge)
        system = f"{system}\n\n{block}" if system else block
    return system


def _warn_unresolved(node, context: ExecutionContext, *templates: Any) -> None:
    tokens: List[str] = []
    for template in templates:
        tokens.extend(context.unresolved(template))
    if tokens:
        logger.warning("workflow_unresolved_variables", node=node.id, tokens=tokens)


async def generate_image(
    services, node, context: ExecutionContext, prompt: str, *, config_id, model, size: str, count: int
) -> Dict[str, Any]:
    result = await services.ai.generate_image(
        context, prompt, config_id=config_id, model=model, size=size, count=count
    )
    urls = [image.get("url") for image in result.images if image.get("url")]
    first = urls[0] if urls else None
    return {
        "result": first,
        "结果": first,
        "images": result.images,
        "imageUrls": urls,
        "model": result.model,
        "prompt": prompt,
    }


async def generate_video(
    services, node, context: ExecutionContext, prompt: str, *, config_id, model, duration: int
) -> Dict[str, Any]:
    result = await services.ai.generate_video(
        context, prompt, config_id=config_id, model=model, duration=duration
    )
    value = result.url or result.task_id
    return {
        "result": value,
        "结果": value,
        "taskId": result.task_id,
        "status": result.status,
        "videoUrl": result.url,
        "model": result.model,
        "prompt": prompt,
    }


async def synthesize_speech(
    services, node, context: ExecutionContext, text: str, *, config_id, model, voice: str, format: str
) -> Dict[str, Any]:
    result = await services.ai.synthesize_speech(
        context, text, config_id=config_id, model=model, voice=voice, format=format
    )
    record = write_output_file(
        services,
        context,
        node,
        f"{node.id}-speech.{result.format}",
        result.audio,
        format=result.format,
        mime_type=_AUDIO_MIME_TYPES.get(result.format, "application/octet-stream"),
    )
    return {
        "result": record.path,
        "结果": record.path,
        "audio": record.to_dict(),
        "voice": voice,
        "model": result.model,
    }


class ProcessProcessor(NodeProcessor):
    """PROCESS/AI nodes: prompt resolution plus one provider call per modality."""

    node_type = "PROCESS"

    async def run(self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()):
        config = node.config
        system_prompt = _build_system_prompt(context, config)
        user_prompt = context.resolve(config.user_prompt or "")
        _warn_unresolved(node, context, config.system_prompt, config.user_prompt)
        if not user_prompt.strip():
            raise NodeError("user prompt is empty after variable resolution", node_id=node.id)
        if self.services.ai is None:
            raise NodeError("AI capability is not configured", node_id=node.id)

        if config.modality == "image-gen":
            data = await generate_image(
                self.services,
                node,
                context,
                user_prompt,
                config_id=config.ai_config_id,
                model=config.model,
                size=config.image_size,
                count=config.image_count,
            )
        elif config.modality == "video-gen":
            data = await generate_video(
                self.services,
                node,
                context,
                user_prompt,
                config_id=config.ai_config_id,
                model=config.model,
                duration=config.video_duration,
            )
        elif config.modality == "audio-tts":
            data = await synthesize_speech(
                self.services,
                node,
                context,
                user_prompt,
                config_id=config.ai_config_id,
                model=config.model,
                voice=config.voice,
                format=config.audio_format,
            )
        else:
            return await self._chat(node, context, system_prompt, user_prompt)
        data["modality"] = config.modality
        return self.success(node, data, model=data.get("model"))

    async def _chat(self, node, context: ExecutionContext, system_prompt: str, user_prompt: str):
        config = node.config
        messages: List[Dict[str, str]] = []
        if system_prompt.strip():
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        max_tokens: Optional[int] = config.max_tokens if config.max_tokens > 0 else None
        result = await self.services.ai.chat(
            context,
            messages,
            config_id=config.ai_config_id,
            model=config.model,
            temperature=config.temperature,
            max_tokens=max_tokens,
        )
        data = {
            "result": result.content,
            "结果": result.content,
            "model": result.model,
            "modality": "text",
            "usage": {
                "promptTokens": result.prompt_tokens,
                "completionTokens": result.completion_tokens,
                "totalTokens": result.prompt_tokens + result.completion_tokens,
            },
        }
        return self.success(
            node,
            data,
            model=result.model,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
        )


class MediaProcessor(NodeProcessor):
    """IMAGE, VIDEO and AUDIO nodes."""

    node_type = "MEDIA"

    async def run(self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()):
        config = node.config
        prompt = context.resolve(config.prompt or "")
        _warn_unresolved(node, context, config.prompt)
        if not prompt.strip():
            raise NodeError(f"{node.kind} prompt is empty after variable resolution", node_id=node.id)
        if self.services.ai is None:
            raise NodeError("AI capability is not configured", node_id=node.id)
        if node.kind == "IMAGE":
            data = await generate_image(
                self.services, node, context, prompt,
                config_id=config.ai_config_id, model=config.model,
                size=config.size, count=config.count,
            )
        elif node.kind == "VIDEO":
            data = await generate_video(
                self.services, node, context, prompt,
                config_id=config.ai_config_id, model=config.model,
                duration=config.duration,
            )
        else:
            data = await synthesize_speech(
                self.services, node, context, prompt,
                config_id=config.ai_config_id, model=config.model,
                voice=config.voice, format=config.format,
            )
        return self.success(node, data, model=data.get("model"))
