import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any

from crm_automation.services.condition_evaluator import resolve_path

logger = logging.getLogger("crm_automation.templating")

_TEMPLATE_VAR_RE = re.compile(r"{{\s*([a-zA-Z0-9_.]+)\s*}}")


def template_context(context: dict[str, Any], *, now: datetime | None = None) -> dict[str, Any]:
    """Context plus the derived variables available to every template."""
    moment = now or datetime.now(timezone.utc)
    today = moment.date()
    enriched = dict(context)
    enriched.setdefault("today", today.isoformat())
    enriched.setdefault("tomorrow", (today + timedelta(days=1)).isoformat())
    enriched.setdefault("nextWeek", (today + timedelta(days=7)).isoformat())

    contact = enriched.get("contact")
    if isinstance(contact, dict) and not contact.get("fullName"):
        first = contact.get("firstName") or contact.get("first_name") or ""
        last = contact.get("lastName") or contact.get("last_name") or ""
        enriched["contact"] = {**contact, "fullName": f"{first} {last}".strip()}
    return enriched


def render_template(template: str, context: dict[str, Any]) -> str:
    """Replace ``{{dotted.path}}`` placeholders; unresolved ones become empty."""

    def _replace(match: re.Match[str]) -> str:
        resolved = resolve_path(context, match.group(1))
        if resolved is None:
            return ""
        if isinstance(resolved, (dict, list)):
            return json.dumps(resolved, ensure_ascii=True, default=str)
        if isinstance(resolved, bool):
            return "true" if resolved else "false"
        return str(resolved)

    try:
        return _TEMPLATE_VAR_RE.sub(_replace, template)
    except Exception:  # noqa: BLE001
        logger.warning("template rendering failed", exc_info=True)
        return _TEMPLATE_VAR_RE.sub("", template)


def render_value(value: Any, context: dict[str, Any]) -> Any:
    if isinstance(value, str):
        return render_template(value, context)
    if isinstance(value, dict):
        return {key: render_value(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, context) for item in value]
    return value
