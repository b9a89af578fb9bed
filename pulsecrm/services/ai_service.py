import json
import re
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from pulsecrm.core.config import settings
from pulsecrm.core.money import to_money
from pulsecrm.core.observability import log_event, logger
from pulsecrm.models.campaign import Campaign
from pulsecrm.models.segment import Segment
from pulsecrm.schemas.ai import (
    AICampaignInsightsOut,
    AIMessagesOut,
    LookalikeCharacteristicsOut,
)
from pulsecrm.schemas.segment import SegmentRulesIn

TASK_SEGMENT_RULES = "segment_rules"
TASK_MESSAGES = "campaign_messages"
TASK_INSIGHTS = "campaign_insights"
TASK_LOOKALIKE = "lookalike_audience"

ModelT = TypeVar("ModelT", bound=BaseModel)


class AIProviderError(RuntimeError):
    """The text-generation provider failed or returned output we cannot use."""


@dataclass
class AIProviderResult:
    text: str
    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None


@dataclass
class AIGeneration(Generic[ModelT]):
    payload: ModelT
    provider: str
    model: str


class LookalikeOut(BaseModel):
    characteristics: LookalikeCharacteristicsOut
    rules: SegmentRulesIn


class AIProvider(Protocol):
    provider: str
    model: str

    def complete(self, *, system_prompt: str, user_prompt: str) -> AIProviderResult:
        ...


_COMPARATOR_WORDS = {
    "at least": ">=",
    "at most": "<=",
    "more than": ">",
    "over": ">",
    "above": ">",
    "less than": "<",
    "under": "<",
    "below": "<",
    "exactly": "=",
}
_THRESHOLD_PATTERN = re.compile(
    r"(at least|at most|more than|over|above|less than|under|below|exactly)\s+"
    r"(?:rs\.?\s*|inr\s*|\$|₹)?(\d[\d,]*(?:\.\d+)?)\s*(visits?|orders?|days?|weeks?|months?)?",
    re.IGNORECASE,
)
_RECENT_PATTERN = re.compile(r"(?:last|past|within)\s+(\d+)\s*(days?|weeks?|months?)", re.IGNORECASE)
_LAPSED_WORDS = ("inactive", "lapsed", "haven't", "have not", "hasn't", "not purchased", "not bought", "since")
_DAYS_PER_UNIT = {"day": 1, "week": 7, "month": 30}


def _unit_days(unit: str) -> int:
    return _DAYS_PER_UNIT[unit.lower().rstrip("s")]


class StubAIProvider:
    """Deterministic provider used by default and in tests; emits the same JSON shapes a model would."""

    provider = f"{settings.ai_vendor}:stub"

    def __init__(self, model: str):
        self.model = model

    def complete(self, *, system_prompt: str, user_prompt: str) -> AIProviderResult:
        task = self._extract_value(user_prompt, "TASK")
        context = self._extract_context(user_prompt)
        if task == TASK_SEGMENT_RULES:
            body = self._segment_rules(str(context.get("description", "")))
        elif task == TASK_MESSAGES:
            body = self._messages(str(context.get("objective", "")), str(context.get("audience", "")))
        elif task == TASK_INSIGHTS:
            body = self._insights(context)
        elif task == TASK_LOOKALIKE:
            body = self._lookalike(context.get("customers") or [])
        else:
            body = {}

        text = json.dumps(body)
        prompt_tokens = self._estimate_tokens(system_prompt + "\n" + user_prompt)
        completion_tokens = self._estimate_tokens(text)
        return AIProviderResult(
            text=text,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    @staticmethod
    def _estimate_tokens(text: str) -> int:
        return max(1, len(text) // 4)

    @staticmethod
    def _extract_value(prompt: str, key: str) -> str:
        match = re.search(rf"{key}:\s*(.+)", prompt)
        if not match:
            return ""
        return match.group(1).strip()

    @staticmethod
    def _extract_context(prompt: str) -> dict[str, Any]:
        match = re.search(r"CONTEXT_JSON:\s*(\{.*\})", prompt, re.DOTALL)
        if not match:
            return {}
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            return {}

    @staticmethod
    def _segment_rules(description: str) -> dict[str, Any]:
        lowered = description.lower()
        lapsed = any(word in lowered for word in _LAPSED_WORDS)
        conditions = []
        for match in _THRESHOLD_PATTERN.finditer(description):
            comparator = _COMPARATOR_WORDS[match.group(1).lower()]
            amount = match.group(2).replace(",", "")
            unit = (match.group(3) or "").lower()
            if unit.startswith(("visit", "order")):
                conditions.append({"field": "visitCount", "operator": comparator, "value": amount})
            elif unit:
                days = int(float(amount)) * _unit_days(unit)
                conditions.append(
                    {"field": "lastPurchaseDate", "operator": "<" if lapsed else ">", "value": str(days)}
                )
            else:
                conditions.append({"field": "totalSpent", "operator": comparator, "value": amount})

        if not any(item["field"] == "lastPurchaseDate" for item in conditions):
            recent = _RECENT_PATTERN.search(description)
            if recent:
                days = int(recent.group(1)) * _unit_days(recent.group(2))
                conditions.append(
                    {"field": "lastPurchaseDate", "operator": "<" if lapsed else ">", "value": str(days)}
                )

        combinator = "OR" if re.search(r"\bor\b", lowered) else "AND"
        return {"conditions": conditions, "operator": combinator}

    @staticmethod
    def _messages(objective: str, audience: str) -> dict[str, Any]:
        goal = objective.rstrip(".") or "our latest offer"
        return {
            "messages": [
                {
                    "variant": "Emotional",
                    "tone": "warm and personal",
                    "content": f"Hi {{name}}, we have missed you! As one of our {audience}, "
                    f"you are first to hear about {goal}. Come see what we picked for you.",
                },
                {
                    "variant": "Urgency",
                    "tone": "urgent and compelling",
                    "content": f"{{name}}, only 48 hours left: {goal}. Don't miss out, shop now.",
                },
                {
                    "variant": "Value-focused",
                    "tone": "professional and benefit-driven",
                    "content": f"Hello {{name}}, {goal}. Save more on the products you already love. "
                    "Tap to claim your offer.",
                },
            ]
        }

    @staticmethod
    def _insights(context: dict[str, Any]) -> dict[str, Any]:
        audience_size = int(context.get("audience_size", 0))
        delivered = int(context.get("delivered_count", 0))
        failed = int(context.get("failed_count", 0))
        success_rate = float(context.get("success_rate", 0))
        segment = context.get("segment") or "the selected segment"

        summary = (
            f"Your campaign reached {audience_size} customers in {segment} with a "
            f"{success_rate:.1f}% delivery rate ({delivered} delivered, {failed} failed)."
        )
        insights = [f"{delivered} of {audience_size} messages were accepted by the gateway."]
        recommendations = []
        if audience_size == 0:
            insights.append("The segment matched no customers when the campaign ran.")
            recommendations.append("Broaden the segment rules before relaunching.")
        elif success_rate >= 90:
            insights.append("Delivery health is strong for this audience.")
            recommendations.append("Reuse this segment for a follow-up campaign within two weeks.")
        else:
            insights.append("Failure rate is above the 10% baseline.")
            recommendations.append("Review failed communication logs for bounced or unsubscribed contacts.")
        if failed:
            insights.append(f"{failed} recipients should be checked for contact quality.")
        recommendations.append("Test a second message variant on a small share of the audience.")
        return {"summary": summary, "insights": insights, "recommendations": recommendations}

    @staticmethod
    def _lookalike(customers: list[dict[str, Any]]) -> dict[str, Any]:
        spends = [float(item.get("total_spent") or 0) for item in customers]
        visits = [int(item.get("visit_count") or 0) for item in customers]
        if not customers:
            return {
                "characteristics": {
                    "avgSpent": 0,
                    "avgVisits": 0,
                    "spendRange": {"min": 0, "max": 0},
                    "visitRange": {"min": 0, "max": 0},
                },
                "rules": {"conditions": [], "operator": "AND"},
            }
        return {
            "characteristics": {
                "avgSpent": round(sum(spends) / len(spends), 2),
                "avgVisits": round(sum(visits) / len(visits), 2),
                "spendRange": {"min": min(spends), "max": max(spends)},
                "visitRange": {"min": min(visits), "max": max(visits)},
            },
            "rules": {
                "conditions": [
                    {"field": "totalSpent", "operator": ">=", "value": str(to_money(min(spends)))},
                    {"field": "visitCount", "operator": ">=", "value": str(min(visits))},
                ],
                "operator": "AND",
            },
        }


class OpenAIProvider:
    provider = f"{settings.ai_vendor}:openai"

    def __init__(self, *, api_key: str, model: str, base_url: str | None = None):
        try:
            from openai import OpenAI
        except ImportError as exc:
            raise ValueError("openai dependency is not installed") from exc

        client_kwargs: dict[str, str] = {"api_key": api_key}
        if base_url:
            client_kwargs["base_url"] = base_url

        self._client = OpenAI(**client_kwargs)
        self.model = model

    def complete(self, *, system_prompt: str, user_prompt: str) -> AIProviderResult:
        try:
            completion = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=settings.ai_temperature,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            raise AIProviderError(f"AI provider request failed: {exc}") from exc

        text = ""
        if completion.choices and completion.choices[0].message:
            text = completion.choices[0].message.content or ""

        usage = completion.usage
        prompt_tokens = usage.prompt_tokens if usage else None
        completion_tokens = usage.completion_tokens if usage else None
        total_tokens = usage.total_tokens if usage else None
        if total_tokens is None and prompt_tokens is not None and completion_tokens is not None:
            total_tokens = prompt_tokens + completion_tokens

        return AIProviderResult(
            text=text.strip(),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
        )


def _get_provider() -> AIProvider:
    provider_name = settings.ai_provider.strip().lower()
    if provider_name == "stub":
        return StubAIProvider(model=settings.ai_model)
    if provider_name == "openai":
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required when AI_PROVIDER=openai")
        return OpenAIProvider(
            api_key=settings.openai_api_key,
            model=settings.ai_model,
            base_url=settings.openai_base_url,
        )
    raise ValueError(f"Unsupported ai_provider: {settings.ai_provider}")


def _user_prompt(task: str, instructions: str, context: dict[str, Any]) -> str:
    return (
        f"TASK: {task}\n"
        f"{instructions}\n"
        "Respond with a single JSON object and nothing else.\n"
        f"CONTEXT_JSON: {json.dumps(context, default=str)}"
    )


def parse_model_output(text: str, schema: type[ModelT]) -> ModelT:
    """Treat provider output as untrusted JSON and validate it against ``schema``."""
    cleaned = text.strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", cleaned, re.DOTALL)
    if fenced:
        cleaned = fenced.group(1)
    try:
        raw = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise AIProviderError("AI provider returned invalid JSON") from exc
    try:
        return schema.model_validate(raw)
    except ValidationError as exc:
        raise AIProviderError(f"AI provider output failed validation: {exc.error_count()} error(s)") from exc


def _generate(task: str, system_prompt: str, instructions: str, context: dict[str, Any], schema: type[ModelT]) -> AIGeneration[ModelT]:
    provider = _get_provider()
    completion = provider.complete(
        system_prompt=system_prompt,
        user_prompt=_user_prompt(task, instructions, context),
    )
    payload = parse_model_output(completion.text, schema)
    log_event(
        logger,
        "ai_generation",
        task=task,
        provider=provider.provider,
        model=provider.model,
        total_tokens=completion.total_tokens,
    )
    return AIGeneration(payload=payload, provider=provider.provider, model=provider.model)


def generate_segment_rules(description: str) -> AIGeneration[SegmentRulesIn]:
    clean_description = description.strip()[: settings.ai_max_description_chars]
    return _generate(
        TASK_SEGMENT_RULES,
        "You are a CRM expert that converts natural language into structured segment rules.",
        "Convert the description into segment rules. Fields: totalSpent (decimal amount), "
        "visitCount (integer), lastPurchaseDate (days ago, only > or <), customerSince (days ago). "
        'Operators: >, >=, <, <=, =. Shape: {"conditions": [{"field", "operator", "value"}], '
        '"operator": "AND" | "OR"}. Values are strings.',
        {"description": clean_description},
        SegmentRulesIn,
    )


def generate_campaign_messages(objective: str, audience: str) -> AIGeneration[AIMessagesOut]:
    return _generate(
        TASK_MESSAGES,
        "You are a marketing expert specializing in personalized customer communication.",
        "Write 3 message variants (Emotional, Urgency, Value-focused). Use the {name} placeholder "
        'and a clear call to action. Shape: {"messages": [{"variant", "tone", "content"}]}.',
        {
            "objective": objective.strip()[: settings.ai_max_description_chars],
            "audience": audience.strip()[: settings.ai_max_description_chars],
        },
        AIMessagesOut,
    )


def generate_campaign_insights(campaign: Campaign, segment: Segment) -> AIGeneration[AICampaignInsightsOut]:
    return _generate(
        TASK_INSIGHTS,
        "You are a CRM analytics expert who provides actionable insights from campaign performance data.",
        "Analyze the campaign results. Provide a summary paragraph, 3-4 insights and 2-3 "
        'recommendations. Shape: {"summary", "insights": [], "recommendations": []}.',
        {
            "audience_size": campaign.audience_size,
            "delivered_count": campaign.delivered_count,
            "failed_count": campaign.failed_count,
            "success_rate": float(campaign.success_rate or 0),
            "segment": segment.description or segment.name,
        },
        AICampaignInsightsOut,
    )


def generate_lookalike_audience(customers: list[dict[str, Any]]) -> AIGeneration[LookalikeOut]:
    return _generate(
        TASK_LOOKALIKE,
        "You are a data scientist specializing in customer segmentation and lookalike modeling.",
        "Derive lookalike audience criteria from the source customers. Shape: "
        '{"characteristics": {"avgSpent", "avgVisits", "spendRange": {"min", "max"}, '
        '"visitRange": {"min", "max"}}, "rules": {"conditions": [], "operator": "AND"}}.',
        {"customers": customers},
        LookalikeOut,
    )
