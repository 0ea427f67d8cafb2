"""Action nodes delegating work to channel providers or custom callables."""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import Field

from ..errors import NotFoundError, ProviderError, ValidationError
from ..utils.context import render_merge_tags
from .base import NodeConfig, NodeHandler
from .schema import FieldRule

logger = logging.getLogger(__name__)

_CALLBACKS: Dict[str, Callable[..., Any]] = {}


def register_callback(name: str, func: Callable[..., Any]) -> None:
    """Expose ``func`` to ``action_custom`` nodes under ``name``."""
    _CALLBACKS[name] = func


def resolve_callback(target: str) -> Callable[..., Any]:
    """Resolve a registered name or a ``"module:function"`` reference."""
    if target in _CALLBACKS:
        return _CALLBACKS[target]
    if ":" not in target:
        raise NotFoundError(f"Callback not found: {target}", {"callback": target})
    module_name, attr = target.split(":", 1)
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise NotFoundError(f"Callback module not found: {module_name}") from exc
    func = getattr(module, attr, None)
    if not callable(func):
        raise NotFoundError(f"Callback not found: {target}", {"callback": target})
    return func


def _split_addresses(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]


class _ProviderCallMixin:
    """Bounded local retry around one provider ``send`` call."""

    async def call_provider(self, provider_code: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.providers is None:
            raise NotFoundError(f"Provider not found: {provider_code}", {"provider_code": provider_code})
        provider = self.providers.get(provider_code)
        opts = self.options

        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(
                    provider.send(dict(payload, timeout=opts.timeout_seconds)),
                    timeout=opts.timeout_seconds,
                )
            except (ProviderError, asyncio.TimeoutError) as exc:
                attempt += 1
                if attempt > opts.retry_attempts:
                    if isinstance(exc, ProviderError):
                        raise
                    raise ProviderError(
                        f"Provider {provider_code} timed out after {opts.timeout_seconds}s",
                        provider_code,
                    ) from exc
                logger.info(
                    "Provider %s failed (attempt %s/%s), retrying in %ss",
                    provider_code,
                    attempt,
                    opts.retry_attempts + 1,
                    opts.retry_delay,
                )
                await asyncio.sleep(opts.retry_delay)

    @staticmethod
    def provider_outcome(provider_code: str, response: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
        response = dict(response or {})
        if not response.get("success", False):
            return {
                "success": False,
                "error": response.get("error") or f"Provider {provider_code} reported failure",
                "meta": response,
            }
        output = {"provider": provider_code, "message_id": response.get("message_id")}
        output.update(extra)
        return {"output": output, "meta": response}


class ActionConfig(NodeConfig):
    action_type: Literal["send", "ai_task"] = "send"
    provider_code: Optional[str] = None
    channel: Literal["email", "sms", "push", "ai"] = "email"
    subject: str = ""
    body_html: str = ""
    body_text: str = ""
    template_id: Optional[str] = None
    attachments: List[Any] = Field(default_factory=list)
    ai_prompt: str = ""
    ai_model: str = "gpt-3.5-turbo"
    retry_attempts: int = Field(default=0, ge=0, le=5)
    retry_delay: float = Field(default=1, ge=0)
    timeout_seconds: float = Field(default=30, ge=5, le=300)


class ActionNode(_ProviderCallMixin, NodeHandler):
    """Send a message or run an AI task through a registered provider."""

    node_type = "action"
    schema = {
        "action_type": FieldRule(type="string", options=["send", "ai_task"], default="send"),
        "provider_code": FieldRule(type="string"),
        "channel": FieldRule(type="string", options=["email", "sms", "push", "ai"]),
        "subject": FieldRule(type="string", max_length=255),
        "body_html": FieldRule(type="string"),
        "body_text": FieldRule(type="string"),
        "template_id": FieldRule(type="string"),
        "attachments": FieldRule(type="array"),
        "ai_prompt": FieldRule(type="string"),
        "ai_model": FieldRule(type="string"),
        "retry_attempts": FieldRule(type="int", min=0, max=5, default=0),
        "retry_delay": FieldRule(type="number", min=0, default=1),
        "timeout_seconds": FieldRule(type="int", min=5, max=300, default=30),
        "enabled": FieldRule(type="bool", default=True),
    }
    config_model = ActionConfig

    def validate_custom(self) -> List[str]:
        errors = []
        action_type = self.config.get("action_type", "send")
        if action_type == "send" and not self.config.get("provider_code"):
            errors.append("Provider code is required for send actions")
        if action_type == "ai_task" and not self.config.get("ai_prompt"):
            errors.append("AI prompt is required for AI tasks")
        return errors

    async def execute_node(self, context: Dict[str, Any]) -> Dict[str, Any]:
        opts = self.options
        if not opts.enabled:
            return {"output": {"skipped": True}, "meta": {"reason": "Action disabled"}}
        if opts.action_type == "ai_task":
            return await self._execute_ai_task(context)
        return await self._execute_send(context)

    async def _execute_send(self, context: Dict[str, Any]) -> Dict[str, Any]:
        opts = self.options
        payload = {
            "channel": opts.channel,
            "to": context.get("to") or context.get("email"),
            "subject": render_merge_tags(opts.subject, context),
            "html_body": render_merge_tags(opts.body_html, context),
            "text_body": render_merge_tags(opts.body_text, context),
            "attachments": opts.attachments,
            "template_id": opts.template_id,
        }
        response = await self.call_provider(opts.provider_code, payload)
        return self.provider_outcome(opts.provider_code, response)

    async def _execute_ai_task(self, context: Dict[str, Any]) -> Dict[str, Any]:
        opts = self.options
        provider_code = opts.provider_code or "openai"
        payload = {
            "type": "chat",
            "channel": "ai",
            "prompt": render_merge_tags(opts.ai_prompt, context),
            "model": opts.ai_model,
        }
        response = await self.call_provider(provider_code, payload)
        return self.provider_outcome(
            provider_code, response, ai_response=(response or {}).get("output")
        )


class SendEmailConfig(NodeConfig):
    provider_code: str
    to: Optional[str] = None
    cc: Optional[str] = None
    bcc: Optional[str] = None
    subject: str
    body_html: str = ""
    body_text: str = ""
    attachments: List[Any] = Field(default_factory=list)
    retry_attempts: int = Field(default=0, ge=0, le=5)
    retry_delay: float = Field(default=1, ge=0)
    timeout_seconds: float = Field(default=30, ge=5, le=300)


class SendEmailAction(_ProviderCallMixin, NodeHandler):
    """Send an email through an email provider."""

    node_type = "action_send_email"
    schema = {
        "provider_code": FieldRule(type="string", required=True),
        "to": FieldRule(type="string"),
        "cc": FieldRule(type="string"),
        "bcc": FieldRule(type="string"),
        "subject": FieldRule(type="string", required=True, max_length=255),
        "body_html": FieldRule(type="string"),
        "body_text": FieldRule(type="string"),
        "attachments": FieldRule(type="array"),
        "retry_attempts": FieldRule(type="int", min=0, max=5, default=0),
        "retry_delay": FieldRule(type="number", min=0, default=1),
        "timeout_seconds": FieldRule(type="int", min=5, max=300, default=30),
        "enabled": FieldRule(type="bool", default=True),
    }
    config_model = SendEmailConfig

    async def execute_node(self, context: Dict[str, Any]) -> Dict[str, Any]:
        opts = self.options
        if not opts.enabled:
            return {"output": {"skipped": True}, "meta": {"reason": "Action disabled"}}

        to = _split_addresses(render_merge_tags(opts.to, context)) or _split_addresses(
            context.get("email")
        )
        if not to:
            raise ValidationError("Recipient is required", ["Field 'to' is required"])

        payload = {
            "channel": "email",
            "to": to,
            "cc": _split_addresses(opts.cc),
            "bcc": _split_addresses(opts.bcc),
            "subject": render_merge_tags(opts.subject, context),
            "html_body": render_merge_tags(opts.body_html, context),
            "text_body": render_merge_tags(opts.body_text, context),
            "attachments": opts.attachments,
        }
        response = await self.call_provider(opts.provider_code, payload)
        return self.provider_outcome(opts.provider_code, response)


class CustomActionConfig(NodeConfig):
    callback: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: float = Field(default=30, ge=1)


class CustomAction(NodeHandler):
    """Invoke an application supplied callable with the execution context."""

    node_type = "action_custom"
    schema = {
        "callback": FieldRule(type="string", required=True),
        "parameters": FieldRule(type="object"),
        "timeout_seconds": FieldRule(type="int", min=1, default=30),
        "enabled": FieldRule(type="bool", default=True),
    }
    config_model = CustomActionConfig

    async def execute_node(self, context: Dict[str, Any]) -> Dict[str, Any]:
        opts = self.options
        if not opts.enabled:
            return {"output": {"skipped": True}, "meta": {"reason": "Action disabled"}}

        func = resolve_callback(opts.callback)
        args = {"context": context, **opts.parameters}
        if inspect.iscoroutinefunction(func):
            call = func(args)
        else:
            call = asyncio.to_thread(func, args)
        result = await asyncio.wait_for(call, timeout=opts.timeout_seconds)

        if result is None:
            output: Dict[str, Any] = {}
        elif isinstance(result, dict):
            output = result
        else:
            output = {"result": result}
        return {"output": output, "meta": {"callback": opts.callback}}
