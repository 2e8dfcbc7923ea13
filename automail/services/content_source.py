import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from automail.core.config import settings
from automail.core.enums import TRIGGER_AUDIENCE, ContentMode, EmailPurpose, TriggerType
from automail.core.errors import DeliveryError
from automail.core.observability import log_worker_event

Runner = Callable[[Callable[[], Any]], Any]


@dataclass(frozen=True)
class GeneratedContent:
    subject: str
    body: str


@dataclass(frozen=True)
class RenderedContent:
    subject: str
    html_body: str
    mode: ContentMode


class ContentSource(Protocol):
    name: str

    def generate(self, *, segment: str, purpose: str, topic: str) -> GeneratedContent:
        ...


_STUB_TEMPLATES: dict[str, tuple[str, str]] = {
    EmailPurpose.WELCOME.value: (
        "Welcome, we're glad you're here",
        "<p>Thanks for joining us. Here is what to explore first{topic}.</p>",
    ),
    EmailPurpose.PROMOTION.value: (
        "Something picked out for you",
        "<p>A limited offer for our {segment} customers{topic}.</p>",
    ),
    EmailPurpose.REACTIVATION.value: (
        "We miss you",
        "<p>It has been a while. Come back and see what's new{topic}.</p>",
    ),
    EmailPurpose.NEWSLETTER.value: (
        "This month's highlights",
        "<p>News and updates for our {segment} customers{topic}.</p>",
    ),
}


class StubContentSource:
    name = "stub"

    def generate(self, *, segment: str, purpose: str, topic: str) -> GeneratedContent:
        subject, body = _STUB_TEMPLATES.get(purpose, _STUB_TEMPLATES[EmailPurpose.NEWSLETTER.value])
        topic_suffix = f": {topic}" if topic else ""
        return GeneratedContent(
            subject=subject,
            body=body.format(segment=segment, topic=topic_suffix),
        )


class OpenAIContentSource:
    name = "openai"

    def __init__(self, *, api_key: str, model: str, base_url: str | None = None, temperature: float = 0.7):
        try:
            from openai import OpenAI
        except ImportError as exc:
            raise ValueError("openai dependency is not installed") from exc

        client_kwargs: dict[str, str] = {"api_key": api_key}
        if base_url:
            client_kwargs["base_url"] = base_url

        self._client = OpenAI(**client_kwargs)
        self.model = model
        self.temperature = temperature

    @staticmethod
    def _system_prompt() -> str:
        return (
            "You write short marketing emails for an online shop. "
            'Reply with a JSON object {"subject": string, "body": string} where body is simple HTML. '
            "Keep the subject under 80 characters."
        )

    @staticmethod
    def _user_prompt(*, segment: str, purpose: str, topic: str) -> str:
        return "\n".join(
            [
                f"AUDIENCE_SEGMENT: {segment}",
                f"PURPOSE: {purpose}",
                f"TOPIC: {topic or '-'}",
            ]
        )

    def generate(self, *, segment: str, purpose: str, topic: str) -> GeneratedContent:
        completion = self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": self._system_prompt()},
                {"role": "user", "content": self._user_prompt(segment=segment, purpose=purpose, topic=topic)},
            ],
            temperature=self.temperature,
            response_format={"type": "json_object"},
        )

        text = ""
        if completion.choices and completion.choices[0].message:
            text = completion.choices[0].message.content or ""
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DeliveryError("Content generation returned malformed JSON") from exc

        subject = str(parsed.get("subject") or "").strip()
        body = str(parsed.get("body") or "").strip()
        if not subject or not body:
            raise DeliveryError("Content generation returned an empty subject or body")
        return GeneratedContent(subject=subject[:200], body=body)


def get_content_source(name: str | None = None) -> ContentSource:
    normalized = (name or settings.content_provider or "stub").strip().lower()
    if normalized == "stub":
        return StubContentSource()
    if normalized == "openai":
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required for the openai content provider")
        return OpenAIContentSource(
            api_key=settings.openai_api_key,
            model=settings.ai_model,
            base_url=settings.openai_base_url,
            temperature=settings.ai_temperature,
        )
    raise ValueError(f"Unknown content provider '{name}'. Available: openai, stub")


def resolve_step_content(
    source: ContentSource,
    step: Any,
    trigger_type: TriggerType | str,
    *,
    runner: Runner | None = None,
) -> RenderedContent:
    """Return the subject and body to send for a step.

    Generated steps ask the content source, using the audience segment implied
    by the automation's trigger. When generation fails the step's static
    content is used if it has both a subject and a body; otherwise the failure
    is raised as a DeliveryError.
    """
    if not step.use_ai_generation:
        return RenderedContent(subject=step.subject, html_body=step.html_body, mode=ContentMode.STATIC)

    segment = TRIGGER_AUDIENCE[TriggerType(trigger_type)].value
    purpose = step.ai_purpose or EmailPurpose.NEWSLETTER.value
    topic = step.ai_topic or ""

    def _generate() -> GeneratedContent:
        return source.generate(segment=segment, purpose=purpose, topic=topic)

    try:
        generated = runner(_generate) if runner else _generate()
    except Exception as exc:  # noqa: BLE001 - any generation failure may fall back to static content
        if step.subject and step.html_body:
            log_worker_event(
                "content_generation_fallback",
                level=logging.WARNING,
                source=source.name,
                step_index=step.step_index,
                error=str(exc),
            )
            return RenderedContent(subject=step.subject, html_body=step.html_body, mode=ContentMode.STATIC)
        if isinstance(exc, DeliveryError):
            raise
        raise DeliveryError(f"Content generation failed: {exc}") from exc

    return RenderedContent(subject=generated.subject, html_body=generated.body, mode=ContentMode.GENERATED)
