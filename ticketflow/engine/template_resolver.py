"""Template Resolver - {{ticket.x}} / {{user.x}} / {{context.x}} substitution"""
import copy
import re
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from ..domain.models import Ticket, User
from ..utils.time import utc_now, format_iso


PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][\w]*(?:\.[\w]+)*)\s*\}\}")
ROOTS = ("ticket", "user", "context", "now")


def ticket_view(ticket: Ticket) -> Dict[str, Any]:
    """JSON-safe projection of a ticket for templates and scripts"""
    return ticket.model_dump(mode="json", exclude={"comments"})


def build_bindings(
    ticket: Ticket,
    user: Optional[User],
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Explicit bindings handed to templates, custom conditions and scripts

    Every value is a fresh JSON-safe copy, so nothing a consumer does can reach
    the live ticket, the directory or process state.
    """
    return {
        "ticket": ticket_view(ticket),
        "user": user.public_view() if user else {},
        "context": copy.deepcopy(context or {}),
    }


class TemplateContext:
    """
    Read-only view over {ticket, user, context} with placeholder substitution

    Placeholders only look up dotted keys; there is no expression evaluation.
    Unknown keys leave the placeholder untouched.
    """

    def __init__(self, bindings: Dict[str, Any]):
        data = dict(bindings)
        data["now"] = format_iso(utc_now())
        self._data: Mapping[str, Any] = MappingProxyType(data)

    @classmethod
    def for_ticket(
        cls,
        ticket: Ticket,
        user: Optional[User],
        context: Optional[Dict[str, Any]] = None,
    ) -> "TemplateContext":
        return cls(build_bindings(ticket, user, context))

    def get(self, key: str, default: Any = None) -> Any:
        """Get value by dotted key path (e.g. 'ticket.custom_fields.region')"""
        current: Any = self._data
        for part in key.split("."):
            if isinstance(current, Mapping):
                current = current.get(part)
            elif isinstance(current, list) and part.isdigit():
                index = int(part)
                current = current[index] if index < len(current) else None
            else:
                return default
            if current is None:
                return default
        return current

    def resolve_template(self, text: str) -> str:
        """Replace {{placeholders}} with their string form"""
        def replacer(match: "re.Match[str]") -> str:
            value = self.get(match.group(1))
            if value is None:
                return match.group(0)
            if isinstance(value, bool):
                return "true" if value else "false"
            if isinstance(value, list):
                return ", ".join(str(v) for v in value)
            return str(value)

        return PLACEHOLDER.sub(replacer, text)

    def resolve_value(self, value: Any) -> Any:
        """
        Deep-resolve strings inside dicts and lists

        A string that is exactly one placeholder resolves to the raw value so
        numbers, booleans and lists keep their type.
        """
        if isinstance(value, str):
            whole = PLACEHOLDER.fullmatch(value.strip())
            if whole:
                raw = self.get(whole.group(1))
                return copy.deepcopy(raw) if raw is not None else value
            return self.resolve_template(value)
        if isinstance(value, dict):
            return {k: self.resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v) for v in value]
        return value

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(dict(self._data))
