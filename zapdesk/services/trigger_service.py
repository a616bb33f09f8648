"""Automation triggers: conditions evaluated against an inbound-message snapshot, then actions.

Condition evaluation is pure (TriggerContext in, bool out). Rate limits and actions touch
the database; every fired trigger leaves one TriggerActivation row.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from zapdesk.config import settings
from zapdesk.logging_config import PipelineLogger, get_logger
from zapdesk.models import AutomationTrigger, ChatbotFlow, ChatbotState, TriggerActivation
from zapdesk.schemas.outbound import OutboundMessage
from zapdesk.services.chatbot.stages import STAGE_START
from zapdesk.services.conversation_service import (
    add_contact_tag,
    get_contact,
    get_open_conversation,
    get_or_create_contact,
    get_or_create_conversation,
    remove_contact_tag,
)
from zapdesk.services.handoff_service import get_chatbot_state, transfer_to_human
from zapdesk.services.sender_service import send_message

logger = get_logger("trigger_service")

TRANSFER_ACTIONS = {"transferToAgent", "transferToQueue"}
WEBHOOK_TIMEOUT_SECONDS = 10.0
UNIT_MINUTES = {"minutes": 1, "hours": 60, "days": 1440}


@dataclass
class TriggerContext:
    """Snapshot of everything a condition may look at."""

    phone: str
    message_content: str
    current_time: datetime
    is_new_conversation: bool = False
    last_interaction_at: Optional[datetime] = None
    user_tags: list[str] = field(default_factory=list)
    channel: str = "whatsapp"
    business_hours_start: time = time(8, 0)
    business_hours_end: time = time(18, 0)
    business_timezone: str = "America/Sao_Paulo"
    company_id: Optional[UUID] = None
    contact_name: Optional[str] = None
    correlation_id: Optional[str] = None

    def local_time(self) -> datetime:
        return self.current_time.astimezone(ZoneInfo(self.business_timezone))

    def as_dict(self) -> dict[str, Any]:
        return {
            "message": self.message_content,
            "is_new_conversation": self.is_new_conversation,
            "last_interaction_at": self.last_interaction_at.isoformat() if self.last_interaction_at else None,
            "user_tags": list(self.user_tags),
            "channel": self.channel,
        }


@dataclass
class TriggerEvaluation:
    activated: int = 0
    transferred: bool = False
    triggers: list[dict[str, Any]] = field(default_factory=list)


# === CONDITIONS (pure) ===


def _get(conditions: dict, *keys: str, default=None):
    for key in keys:
        if key in conditions:
            return conditions[key]
    return default


def is_within_business_hours(ctx: TriggerContext) -> bool:
    now = ctx.local_time().time()
    start, end = ctx.business_hours_start, ctx.business_hours_end
    if start <= end:
        return start <= now < end
    # Window wraps past midnight, e.g. 22:00-06:00
    return now >= start or now < end


def minutes_since_last_interaction(ctx: TriggerContext) -> Optional[float]:
    if ctx.last_interaction_at is None:
        return None
    last = ctx.last_interaction_at
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return (ctx.current_time - last).total_seconds() / 60


def _message_received(conditions: dict, ctx: TriggerContext) -> bool:
    content = (ctx.message_content or "").lower()

    message_rules = _get(conditions, "message_content", "messageContent") or {}
    contains = _get(message_rules, "contains")
    if contains and str(contains).lower() not in content:
        return False
    starts_with = _get(message_rules, "starts_with", "startsWith")
    if starts_with and not content.startswith(str(starts_with).lower()):
        return False
    equals = _get(message_rules, "equals")
    if equals and content.strip() != str(equals).lower().strip():
        return False
    pattern = _get(message_rules, "regex")
    if pattern:
        try:
            if not re.search(pattern, ctx.message_content or "", re.IGNORECASE):
                return False
        except re.error:
            return False

    user_tags = _get(conditions, "user_tags", "userTags")
    if user_tags and not any(tag in ctx.user_tags for tag in user_tags):
        return False

    source_channel = _get(conditions, "source_channel", "sourceChannel")
    if source_channel and source_channel != ctx.channel:
        return False

    return True


def _keyword_detected(conditions: dict, ctx: TriggerContext) -> bool:
    keywords = [str(keyword).lower() for keyword in (_get(conditions, "keywords") or []) if keyword]
    if not keywords:
        return False
    content = (ctx.message_content or "").lower()
    hits = [keyword in content for keyword in keywords]
    if _get(conditions, "match", default="any") == "all":
        return all(hits)
    return any(hits)


def _first_message(conditions: dict, ctx: TriggerContext) -> bool:
    return ctx.is_new_conversation


def _business_hours(conditions: dict, ctx: TriggerContext) -> bool:
    outside_hours = _get(conditions, "outside_hours", "outsideHours", default=True)
    in_hours = is_within_business_hours(ctx)
    return not in_hours if outside_hours else in_hours


def _last_interaction(conditions: dict, ctx: TriggerContext) -> bool:
    rule = _get(conditions, "last_interaction", "lastInteraction") or {}
    elapsed = minutes_since_last_interaction(ctx)
    if not rule or elapsed is None:
        return False

    try:
        threshold = float(rule.get("value", 0)) * UNIT_MINUTES.get(rule.get("unit", "minutes"), 1)
    except (TypeError, ValueError):
        return False

    operator = rule.get("operator", "gt")
    if operator == "gt":
        return elapsed > threshold
    if operator == "lt":
        return elapsed < threshold
    if operator == "eq":
        return abs(elapsed - threshold) <= 1
    return False


CONDITION_EVALUATORS: dict[str, Callable[[dict, TriggerContext], bool]] = {
    "message_received": _message_received,
    "keyword_detected": _keyword_detected,
    "first_message": _first_message,
    "business_hours": _business_hours,
    "user_return": _last_interaction,
    "inactivity": _last_interaction,
}


def evaluate_conditions(trigger_type: str, conditions: Optional[dict], ctx: TriggerContext) -> bool:
    evaluator = CONDITION_EVALUATORS.get(trigger_type)
    if evaluator is None:
        return False
    return evaluator(conditions or {}, ctx)


# === RATE LIMITS ===


def count_recent_activations(db: Session, trigger_id: UUID, phone: str, since: datetime) -> int:
    return (
        db.query(func.count(TriggerActivation.id))
        .filter(
            TriggerActivation.trigger_id == trigger_id,
            TriggerActivation.contact_phone == phone,
            TriggerActivation.created_at >= since,
        )
        .scalar()
        or 0
    )


def check_rate_limits(db: Session, trigger: AutomationTrigger, ctx: TriggerContext) -> Optional[str]:
    """Return why the trigger must be skipped, or None."""
    if trigger.cooldown_minutes:
        since = ctx.current_time - timedelta(minutes=trigger.cooldown_minutes)
        if count_recent_activations(db, trigger.id, ctx.phone, since) > 0:
            return "cooldown"

    if trigger.max_activations_per_day:
        midnight = ctx.local_time().replace(hour=0, minute=0, second=0, microsecond=0)
        if count_recent_activations(db, trigger.id, ctx.phone, midnight) >= trigger.max_activations_per_day:
            return "daily_limit"

    return None


# === ACTIONS ===


def _action_config(config: Any) -> dict:
    if isinstance(config, dict):
        return config
    if isinstance(config, str):
        return {"value": config}
    return {}


def _transfer(db: Session, trigger: AutomationTrigger, ctx: TriggerContext, config: dict) -> dict:
    department = config.get("department") or config.get("queue") or config.get("value")
    result = transfer_to_human(
        db,
        company_id=ctx.company_id,
        phone=ctx.phone,
        reason=config.get("reason") or f"Gatilho de automação: {trigger.name}",
        department=department,
        context={"name": ctx.contact_name, "phone": ctx.phone, "triggered_by": str(trigger.id)},
        client_name=ctx.contact_name,
    )
    if not result.ok:
        return {"success": False, "error": result.error}
    return {"success": True, "conversation_id": str(result.value.id), "department": result.value.department}


def _start_flow(db: Session, trigger: AutomationTrigger, ctx: TriggerContext, config: dict) -> dict:
    flow_id = config.get("flow_id") or config.get("flowId") or config.get("value")
    if flow_id:
        flow = db.query(ChatbotFlow).filter(ChatbotFlow.id == flow_id, ChatbotFlow.is_active.is_(True)).first()
        if flow is None:
            return {"success": False, "error": f"Flow {flow_id} not found"}

    flow_context = {
        "name": ctx.contact_name,
        "phone": ctx.phone,
        "flow_id": str(flow_id) if flow_id else None,
        "triggered_by": str(trigger.id),
        "trigger_reason": trigger.name,
    }
    state = get_chatbot_state(db, ctx.phone)
    if state is None:
        state = ChatbotState(
            contact_phone=ctx.phone,
            company_id=ctx.company_id,
            current_stage=STAGE_START,
            context=flow_context,
            correlation_id=ctx.correlation_id,
        )
        db.add(state)
    else:
        state.current_stage = STAGE_START
        state.context = {**(state.context or {}), **flow_context}
        state.correlation_id = ctx.correlation_id
    db.flush()
    return {"success": True, "flow_id": flow_context["flow_id"]}


def _send_message(db: Session, trigger: AutomationTrigger, ctx: TriggerContext, config: dict) -> dict:
    text = config.get("message") or config.get("value")
    if not text:
        return {"success": False, "error": "sendMessage requires a message"}
    result = send_message(OutboundMessage(type="text", phone=ctx.phone, data={"message": text}))
    if not result.ok:
        return {"success": False, "error": result.error}
    return {"success": True}


def _tag_values(config: dict) -> list[str]:
    tags = config.get("tags")
    if isinstance(tags, list):
        return [str(tag) for tag in tags if tag]
    tag = config.get("tag") or config.get("value")
    return [str(tag)] if tag else []


def _add_tag(db: Session, trigger: AutomationTrigger, ctx: TriggerContext, config: dict) -> dict:
    tags = _tag_values(config)
    if not tags:
        return {"success": False, "error": "addUserTag requires a tag"}
    contact = get_or_create_contact(db, ctx.company_id, ctx.phone, ctx.contact_name)
    current = list(contact.tags or [])
    for tag in tags:
        current = add_contact_tag(db, contact, tag)
    return {"success": True, "tags": current}


def _remove_tag(db: Session, trigger: AutomationTrigger, ctx: TriggerContext, config: dict) -> dict:
    tags = _tag_values(config)
    if not tags:
        return {"success": False, "error": "removeUserTag requires a tag"}
    contact = get_or_create_contact(db, ctx.company_id, ctx.phone, ctx.contact_name)
    current = list(contact.tags or [])
    for tag in tags:
        current = remove_contact_tag(db, contact, tag)
    return {"success": True, "tags": current}


def _create_ticket(db: Session, trigger: AutomationTrigger, ctx: TriggerContext, config: dict) -> dict:
    contact = get_or_create_contact(db, ctx.company_id, ctx.phone, ctx.contact_name)
    conversation = get_or_create_conversation(db, contact)
    return {"success": True, "conversation_id": str(conversation.id)}


def _call_webhook(db: Session, trigger: AutomationTrigger, ctx: TriggerContext, config: dict) -> dict:
    url = config.get("url") or config.get("value")
    if not url:
        return {"success": False, "error": "callWebhook requires a url"}
    method = str(config.get("method") or "POST").upper()
    body = config.get("body") or {
        "trigger_id": str(trigger.id),
        "trigger_name": trigger.name,
        "phone": ctx.phone,
        "message": ctx.message_content,
    }
    with httpx.Client(timeout=WEBHOOK_TIMEOUT_SECONDS) as client:
        response = client.request(method, url, headers=config.get("headers") or {}, json=body)
    return {"success": response.status_code < 400, "status": response.status_code}


def _log_event(db: Session, trigger: AutomationTrigger, ctx: TriggerContext, config: dict) -> dict:
    logger.info(
        "Trigger event",
        extra={"context": {"trigger": trigger.name, "phone": ctx.phone, "event": config or None}},
    )
    return {"success": True}


ACTION_HANDLERS: dict[str, Callable[[Session, AutomationTrigger, TriggerContext, dict], dict]] = {
    "transferToAgent": _transfer,
    "transferToQueue": _transfer,
    "startFlow": _start_flow,
    "sendMessage": _send_message,
    "addUserTag": _add_tag,
    "removeUserTag": _remove_tag,
    "createTicket": _create_ticket,
    "callWebhook": _call_webhook,
    "logEvent": _log_event,
}


def normalize_actions(actions: Any) -> list[tuple[str, dict]]:
    """Accept {"name": config} or [{"type": name, ...}] and return ordered (name, config) pairs."""
    if isinstance(actions, dict):
        return [(name, _action_config(config)) for name, config in actions.items()]
    if isinstance(actions, list):
        pairs = []
        for item in actions:
            if isinstance(item, dict) and item.get("type"):
                config = {key: value for key, value in item.items() if key != "type"}
                pairs.append((item["type"], config))
        return pairs
    return []


def execute_actions(db: Session, trigger: AutomationTrigger, ctx: TriggerContext) -> tuple[dict[str, Any], bool]:
    """Run every action of a trigger. Returns (per-action outcomes, transfer happened).

    Each action runs in its own savepoint so a failing action cannot poison the others.
    """
    outcomes: dict[str, Any] = {}
    transferred = False
    for name, config in normalize_actions(trigger.actions):
        handler = ACTION_HANDLERS.get(name)
        if handler is None:
            outcomes[name] = {"success": False, "error": f"Unknown action: {name}"}
            continue
        try:
            with db.begin_nested():
                outcome = handler(db, trigger, ctx, config)
        except Exception as e:
            logger.error(
                f"Trigger action {name} failed: {e}",
                extra={"context": {"trigger_id": str(trigger.id), "phone": ctx.phone}},
            )
            outcome = {"success": False, "error": str(e)}
        outcomes[name] = outcome
        if name in TRANSFER_ACTIONS and outcome.get("success"):
            transferred = True
    return outcomes, transferred


def record_activation(
    db: Session,
    trigger: AutomationTrigger,
    ctx: TriggerContext,
    *,
    actions_executed: dict[str, Any],
    success: bool,
    error_message: Optional[str] = None,
) -> TriggerActivation:
    activation = TriggerActivation(
        trigger_id=trigger.id,
        contact_phone=ctx.phone,
        activation_reason=f"Triggered by {trigger.trigger_type}",
        conditions_met={"trigger_type": trigger.trigger_type, "conditions": trigger.conditions, **ctx.as_dict()},
        actions_executed=actions_executed,
        success=success,
        error_message=error_message,
        created_at=ctx.current_time,
    )
    db.add(activation)
    db.flush()
    return activation


# === EVALUATION ===


def load_active_triggers(db: Session, company_id: Optional[UUID]) -> list[AutomationTrigger]:
    query = db.query(AutomationTrigger).filter(AutomationTrigger.enabled.is_(True))
    if company_id is not None:
        query = query.filter(or_(AutomationTrigger.company_id == company_id, AutomationTrigger.company_id.is_(None)))
    else:
        query = query.filter(AutomationTrigger.company_id.is_(None))
    return query.order_by(AutomationTrigger.priority.asc(), AutomationTrigger.created_at.asc()).all()


def evaluate_triggers(db: Session, ctx: TriggerContext) -> TriggerEvaluation:
    """Fire every matching trigger in priority order; a transfer stops the walk. Caller commits."""
    log = PipelineLogger("trigger_processor", ctx.correlation_id)
    evaluation = TriggerEvaluation()

    for trigger in load_active_triggers(db, ctx.company_id):
        if not evaluate_conditions(trigger.trigger_type, trigger.conditions, ctx):
            continue

        skip_reason = check_rate_limits(db, trigger, ctx)
        if skip_reason:
            log.info(
                f"Trigger skipped: {skip_reason}",
                contact_phone=ctx.phone,
                trigger_id=str(trigger.id),
                trigger_name=trigger.name,
            )
            continue

        outcomes, transferred = execute_actions(db, trigger, ctx)
        errors = [f"{name}: {outcome.get('error')}" for name, outcome in outcomes.items() if not outcome.get("success")]
        record_activation(
            db,
            trigger,
            ctx,
            actions_executed=outcomes,
            success=not errors,
            error_message="; ".join(errors) if errors else None,
        )

        evaluation.activated += 1
        evaluation.triggers.append({"id": str(trigger.id), "name": trigger.name, "actions": list(outcomes.keys())})
        log.info(
            "Trigger activated",
            contact_phone=ctx.phone,
            trigger_id=str(trigger.id),
            trigger_name=trigger.name,
            success=not errors,
        )

        if transferred:
            evaluation.transferred = True
            break

    return evaluation


def _parse_hhmm(value: str, fallback: time) -> time:
    try:
        hours, minutes = value.split(":", 1)
        return time(int(hours), int(minutes))
    except (AttributeError, ValueError):
        logger.warning(f"Invalid business hours value: {value!r}")
        return fallback


def build_trigger_context(
    db: Session,
    *,
    company_id: Optional[UUID],
    phone: str,
    message_content: str,
    contact_name: Optional[str] = None,
    correlation_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TriggerContext:
    contact = get_contact(db, company_id, phone)
    conversation = get_open_conversation(db, contact.id) if contact else None
    state = get_chatbot_state(db, phone)

    last_interaction = None
    if conversation is not None and conversation.last_message_at is not None:
        last_interaction = conversation.last_message_at
    elif state is not None:
        last_interaction = state.updated_at

    return TriggerContext(
        phone=phone,
        message_content=message_content,
        current_time=now or datetime.now(timezone.utc),
        is_new_conversation=conversation is None and state is None,
        last_interaction_at=last_interaction,
        user_tags=list(contact.tags or []) if contact else [],
        business_hours_start=_parse_hhmm(settings.business_hours_start, time(8, 0)),
        business_hours_end=_parse_hhmm(settings.business_hours_end, time(18, 0)),
        business_timezone=settings.business_timezone,
        company_id=company_id,
        contact_name=contact_name or (contact.name if contact else None),
        correlation_id=correlation_id,
    )
