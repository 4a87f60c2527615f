from dataclasses import dataclass, field
from typing import Any

from crm_automation.schemas.event import EventContextIn


@dataclass(frozen=True)
class DispatchContext:
    business_id: str
    entity_type: str
    entity_id: str
    current: dict[str, Any] = field(default_factory=dict)
    entity_name: str | None = None
    previous: dict[str, Any] | None = None
    changed_fields: list[str] | None = None
    user_id: str | None = None
    user_name: str | None = None
    source: str = "web"

    @classmethod
    def from_schema(cls, *, business_id: str, payload: EventContextIn) -> "DispatchContext":
        return cls(
            business_id=business_id,
            entity_type=payload.entity_type,
            entity_id=payload.entity_id,
            current=dict(payload.current),
            entity_name=payload.entity_name,
            previous=dict(payload.previous) if payload.previous is not None else None,
            changed_fields=list(payload.changed_fields) if payload.changed_fields is not None else None,
            user_id=payload.user_id,
            user_name=payload.user_name,
            source=payload.source,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "business_id": self.business_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "current": self.current,
            "previous": self.previous,
            "changed_fields": self.changed_fields,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DispatchContext":
        return cls(
            business_id=str(data["business_id"]),
            entity_type=str(data["entity_type"]),
            entity_id=str(data["entity_id"]),
            current=data.get("current") or {},
            entity_name=data.get("entity_name"),
            previous=data.get("previous"),
            changed_fields=data.get("changed_fields"),
            user_id=data.get("user_id"),
            user_name=data.get("user_name"),
            source=str(data.get("source") or "web"),
        )


def stage_of(snapshot: dict[str, Any] | None) -> dict[str, Any] | None:
    """Populated stage object of a deal snapshot, if any."""
    if not isinstance(snapshot, dict):
        return None
    for key in ("stage", "stageId", "stage_id"):
        value = snapshot.get(key)
        if isinstance(value, dict):
            return value
    return None


def stage_flag(stage: dict[str, Any] | None, name: str) -> bool:
    if not stage:
        return False
    snake = "is_" + name[2:].lower() if name.startswith("is") else name
    return bool(stage.get(name) or stage.get(snake))


def build_rule_context(event_tag: str, ctx: DispatchContext) -> dict[str, Any]:
    """Data rule conditions and action templates are resolved against.

    The entity snapshot is exposed under its type (``deal``, ``contact`` ...) and
    populated ``contact``/``client`` objects of a deal or activity are lifted to the top.
    """
    current = ctx.current or {}
    context: dict[str, Any] = {
        "event": event_tag,
        "trigger_type": event_tag.replace(".", "_"),
        "business_id": ctx.business_id,
        "entity_type": ctx.entity_type,
        "entity_id": ctx.entity_id,
        "entity_name": ctx.entity_name,
        "current": current,
        "previous": ctx.previous,
        "changed_fields": ctx.changed_fields or [],
        "user_id": ctx.user_id,
        "user_name": ctx.user_name,
        "userId": ctx.user_id,
        "source": ctx.source,
    }
    context[ctx.entity_type] = current

    for related in ("deal", "contact", "client"):
        if related == ctx.entity_type:
            continue
        for key in (related, f"{related}Id", f"{related}_id"):
            value = current.get(key)
            if isinstance(value, dict):
                context.setdefault(related, value)
                break

    new_stage = stage_of(current)
    old_stage = stage_of(ctx.previous)
    if new_stage is not None:
        context["newStage"] = new_stage.get("name")
    if old_stage is not None:
        context["previousStage"] = old_stage.get("name")
    return context
