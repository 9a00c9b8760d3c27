from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

import httpx

from flowkernel.logging import get_logger
from flowkernel.nodes.base import NodeProcessor
from flowkernel.service.context import ExecutionContext
from flowkernel.service.errors import NodeError
from flowkernel.service.sandbox import EgressError

logger = get_logger(__name__)


def feishu_payload(config, content: str, title: Optional[str]) -> Dict[str, Any]:
    if config.message_type == "markdown":
        card: Dict[str, Any] = {"elements": [{"tag": "markdown", "content": content}]}
        if title:
            card["header"] = {"title": {"tag": "plain_text", "content": title}, "template": "blue"}
        return {"msg_type": "interactive", "card": card}
    return {"msg_type": "text", "content": {"text": content}}


def dingtalk_payload(config, content: str, title: Optional[str]) -> Dict[str, Any]:
    at = {"atMobiles": list(config.at_mobiles), "isAtAll": config.at_all}
    if config.message_type == "markdown":
        return {
            "msgtype": "markdown",
            "markdown": {"title": title or "Notification", "text": content},
            "at": at,
        }
    return {"msgtype": "text", "text": {"content": content}, "at": at}


def wecom_payload(config, content: str, title: Optional[str]) -> Dict[str, Any]:
    if config.message_type == "markdown":
        text = f"## {title}\n{content}" if title else content
        return {"msgtype": "markdown", "markdown": {"content": text}}
    mentions = list(config.at_mobiles) + (["@all"] if config.at_all else [])
    return {"msgtype": "text", "text": {"content": content, "mentioned_mobile_list": mentions}}


def webhook_payload(config, content: str, title: Optional[str]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"content": content, "messageType": config.message_type}
    if title:
        payload["title"] = title
    return payload


_PAYLOAD_BUILDERS = {
    "feishu": feishu_payload,
    "dingtalk": dingtalk_payload,
    "wecom": wecom_payload,
    "webhook": webhook_payload,
}


def delivery_error(platform: str, response: httpx.Response, body: Any) -> Optional[str]:
    """Platform-specific failure message, or ``None`` when the webhook accepted the message."""
    if not response.is_success:
        return f"{platform} webhook returned HTTP {response.status_code}"
    if not isinstance(body, dict):
        return None if platform == "webhook" else f"{platform} webhook returned a non-JSON response"
    if platform == "feishu":
        if body.get("code") == 0 or body.get("StatusCode") == 0:
            return None
        return f"feishu rejected the message: {body.get('msg') or body.get('StatusMessage') or body}"
    if platform in ("dingtalk", "wecom"):
        if body.get("errcode") == 0:
            return None
        return f"{platform} rejected the message: {body.get('errmsg') or body}"
    return None


class NotificationProcessor(NodeProcessor):
    """Webhook notifications; failures are best effort unless ``failExecution`` is set."""

    node_type = "NOTIFICATION"

    async def run(self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()):
        config = node.config
        best_effort = not config.fail_execution
        webhook_url = context.resolve(config.webhook_url or "").strip()
        content = context.resolve(config.content or "")
        title = context.resolve(config.title) if config.title else None
        if not webhook_url:
            return self.error(node, "webhook URL is not configured", best_effort=best_effort)
        if not content.strip():
            return self.error(node, "notification content is empty", best_effort=best_effort)
        if self.services.egress is None:
            raise NodeError("HTTP egress is not configured", node_id=node.id)

        payload = _PAYLOAD_BUILDERS[config.platform](config, content, title)
        timeout = self.services.settings.http_default_timeout_ms / 1000.0
        try:
            response = await self.services.egress.request(
                "POST", webhook_url, json=payload, timeout=timeout
            )
        except (EgressError, httpx.HTTPError) as exc:
            logger.warning("workflow_notification_failed", node=node.id, platform=config.platform, error=str(exc))
            return self.error(
                node,
                f"{config.platform} notification failed: {exc}",
                data={"platform": config.platform, "sent": False},
                best_effort=best_effort,
            )
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        data = {
            "platform": config.platform,
            "sent": True,
            "statusCode": response.status_code,
            "response": body,
            "result": "sent",
        }
        problem = delivery_error(config.platform, response, body)
        if problem:
            logger.warning("workflow_notification_rejected", node=node.id, platform=config.platform, error=problem)
            data["sent"] = False
            data["result"] = "failed"
            return self.error(node, problem, data=data, best_effort=best_effort)
        return data
