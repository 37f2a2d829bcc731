"""Condition Evaluator - Grouped guard evaluation (OR inside a group, AND across groups)"""
import json
import re
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from .script_sandbox import ScriptSandbox
from .template_resolver import build_bindings
from ..domain.models import Condition, ConditionTrace, GuardEvaluation, Ticket, Transition, User
from ..domain.enums import ConditionType, ConditionOperator
from ..domain.errors import DomainError
from ..utils.logger import get_logger
from ..utils.time import coerce_datetime, minutes_since, minutes_until

logger = get_logger(__name__)


class ConditionError(Exception):
    """A single condition could not be evaluated (bad expected value, missing data)"""


class ConditionEvaluator:
    """
    Evaluate transition guards safely

    Conditions are interpreted by a fixed set of operators; the only code
    execution path is the `custom` type, which goes through the script sandbox.
    Stateless apart from its sandbox handle, so one instance serves all threads.
    """

    def __init__(self, sandbox: Optional[ScriptSandbox] = None):
        self._sandbox = sandbox

    @property
    def sandbox(self) -> ScriptSandbox:
        if self._sandbox is None:
            self._sandbox = ScriptSandbox()
        return self._sandbox

    def evaluate(
        self,
        transition: Transition,
        ticket: Ticket,
        user: Optional[User],
        context: Optional[Dict[str, Any]] = None,
    ) -> GuardEvaluation:
        """Evaluate a transition's active conditions"""
        return self.evaluate_conditions(transition.active_conditions(), ticket, user, context)

    def evaluate_conditions(
        self,
        conditions: List[Condition],
        ticket: Ticket,
        user: Optional[User],
        context: Optional[Dict[str, Any]] = None,
    ) -> GuardEvaluation:
        """
        Evaluate conditions as AND of OR-groups

        Args:
            conditions: Active conditions to evaluate
            ticket: Current ticket state
            user: Acting user
            context: Caller-supplied extra data

        Returns:
            GuardEvaluation with the overall result and a trace entry per condition
        """
        if not conditions:
            return GuardEvaluation(allowed=True)

        context = context or {}
        ticket_data = ticket.model_dump(exclude={"comments"})
        groups: "OrderedDict[int, List[bool]]" = OrderedDict()
        trace: List[ConditionTrace] = []

        for condition in conditions:
            result, reason, error = self._evaluate_single(condition, ticket, ticket_data, user, context)
            groups.setdefault(condition.condition_group, []).append(result)
            trace.append(ConditionTrace(
                condition_id=condition.condition_id,
                condition_group=condition.condition_group,
                condition_type=condition.condition_type,
                result=result,
                reason=reason,
                error=error,
            ))

        failed_groups = sorted(group for group, results in groups.items() if not any(results))
        return GuardEvaluation(allowed=not failed_groups, trace=trace, failed_groups=failed_groups)

    def _evaluate_single(
        self,
        condition: Condition,
        ticket: Ticket,
        ticket_data: Dict[str, Any],
        user: Optional[User],
        context: Dict[str, Any],
    ) -> Tuple[bool, str, Optional[str]]:
        """Evaluate one condition; errors make it false instead of propagating"""
        try:
            handler = {
                ConditionType.FIELD: self._evaluate_field,
                ConditionType.ROLE: self._evaluate_role,
                ConditionType.TIME: self._evaluate_time,
                ConditionType.SLA: self._evaluate_sla,
                ConditionType.ASSIGNMENT: self._evaluate_assignment,
                ConditionType.CUSTOM: self._evaluate_custom,
            }[condition.condition_type]
            result, reason = handler(condition, ticket, ticket_data, user, context)
            return result, reason, None
        except ConditionError as e:
            return False, "condition could not be evaluated", str(e)
        except DomainError as e:
            return False, "custom condition failed", e.message
        except (TypeError, ValueError) as e:
            logger.warning(
                f"Condition {condition.condition_id} evaluation failed: {e}",
                extra={"transition_id": condition.transition_id}
            )
            return False, "condition could not be evaluated", str(e)

    # =========================================================================
    # Per-type evaluation
    # =========================================================================

    def _evaluate_field(self, condition, ticket, ticket_data, user, context) -> Tuple[bool, str]:
        value = self._get_field_value(condition.field_name or "", ticket_data, context)
        result = self._compare(value, condition.operator, condition.expected_value)
        return result, f"{condition.field_name} {condition.operator.value} {condition.expected_value!r} (actual {value!r})"

    def _evaluate_role(self, condition, ticket, ticket_data, user, context) -> Tuple[bool, str]:
        role = user.role if user else None
        if role is None:
            return False, "no acting user role"
        operator = condition.operator
        # Roles match exactly; no case folding or numeric coercion
        if operator in (ConditionOperator.EQUALS, ConditionOperator.NOT_EQUALS):
            matched = role == self._parse_scalar(condition.expected_value)
            result = matched if operator == ConditionOperator.EQUALS else not matched
        elif operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
            matched = role in self._parse_array(condition.expected_value)
            result = matched if operator == ConditionOperator.IN else not matched
        else:
            result = self._compare(role, operator, condition.expected_value)
        return result, f"role {role!r} {condition.operator.value} {condition.expected_value!r}"

    def _evaluate_time(self, condition, ticket, ticket_data, user, context) -> Tuple[bool, str]:
        reference_field = condition.field_name or "created_at"
        if reference_field in ("last_transition", "last_transition_at"):
            reference = ticket.last_transition_at or ticket.created_at
        else:
            raw = self._get_field_value(reference_field, ticket_data, context)
            try:
                reference = coerce_datetime(raw)
            except (ValueError, OverflowError):
                raise ConditionError(f"{reference_field} is not a timestamp")
        if reference is None:
            return False, f"{reference_field} is not set"
        elapsed = minutes_since(reference)
        result = self._compare(elapsed, condition.operator, condition.expected_value)
        return result, f"{elapsed:.1f} minutes since {reference_field} {condition.operator.value} {condition.expected_value}"

    def _evaluate_sla(self, condition, ticket, ticket_data, user, context) -> Tuple[bool, str]:
        if condition.operator in (ConditionOperator.EQUALS, ConditionOperator.NOT_EQUALS):
            expected = self._parse_bool(condition.expected_value)
            breached = bool(ticket.sla_breach) or (
                ticket.sla_deadline is not None and minutes_until(ticket.sla_deadline) < 0
            )
            result = (breached == expected) if condition.operator == ConditionOperator.EQUALS else (breached != expected)
            return result, f"sla breached={breached} {condition.operator.value} {expected}"
        if ticket.sla_deadline is None:
            return False, "ticket has no SLA deadline"
        remaining = minutes_until(ticket.sla_deadline)
        result = self._compare(remaining, condition.operator, condition.expected_value)
        return result, f"{remaining:.1f} minutes to breach {condition.operator.value} {condition.expected_value}"

    def _evaluate_assignment(self, condition, ticket, ticket_data, user, context) -> Tuple[bool, str]:
        assignee = ticket.assigned_to_id
        if condition.operator == ConditionOperator.EQUALS:
            expected = condition.expected_value
            if expected == "current_user":
                expected = user.user_id if user else None
            return assignee is not None and assignee == expected, f"assignee {assignee!r} equals {expected!r}"
        result = self._compare(assignee, condition.operator, None)
        return result, f"assignee {assignee!r} {condition.operator.value}"

    def _evaluate_custom(self, condition, ticket, ticket_data, user, context) -> Tuple[bool, str]:
        outcome = self.sandbox.run(condition.expected_value or "", build_bindings(ticket, user, context))
        if not isinstance(outcome, bool):
            raise ConditionError(f"custom condition returned {type(outcome).__name__}, expected bool")
        return outcome, f"custom script returned {outcome}"

    # =========================================================================
    # Value access and comparison
    # =========================================================================

    def _get_field_value(self, field_path: str, ticket_data: Dict[str, Any], context: Dict[str, Any]) -> Any:
        """
        Read a field using dot notation

        Lookup order: ticket attribute, ticket custom field, execution context.
        """
        for source in (ticket_data, ticket_data.get("custom_fields") or {}, context):
            found, value = self._lookup(source, field_path)
            if found:
                return value
        return None

    @staticmethod
    def _lookup(source: Dict[str, Any], field_path: str) -> Tuple[bool, Any]:
        value: Any = source
        for part in field_path.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return False, None
        return True, value

    def _compare(self, field_value: Any, operator: ConditionOperator, expected: Optional[str]) -> bool:
        """Compare values using operator"""

        if operator == ConditionOperator.IS_EMPTY:
            return self._is_empty(field_value)

        elif operator == ConditionOperator.IS_NOT_EMPTY:
            return not self._is_empty(field_value)

        elif operator == ConditionOperator.EQUALS:
            return self._loose_equals(field_value, self._parse_scalar(expected))

        elif operator == ConditionOperator.NOT_EQUALS:
            return not self._loose_equals(field_value, self._parse_scalar(expected))

        elif operator == ConditionOperator.GREATER_THAN:
            return self._compare_numeric(field_value, expected, lambda a, b: a > b)

        elif operator == ConditionOperator.LESS_THAN:
            return self._compare_numeric(field_value, expected, lambda a, b: a < b)

        elif operator == ConditionOperator.GREATER_OR_EQUAL:
            return self._compare_numeric(field_value, expected, lambda a, b: a >= b)

        elif operator == ConditionOperator.LESS_OR_EQUAL:
            return self._compare_numeric(field_value, expected, lambda a, b: a <= b)

        elif operator == ConditionOperator.CONTAINS:
            return self._contains(field_value, expected)

        elif operator == ConditionOperator.NOT_CONTAINS:
            return not self._contains(field_value, expected)

        elif operator == ConditionOperator.STARTS_WITH:
            return field_value is not None and str(field_value).lower().startswith((expected or "").lower())

        elif operator == ConditionOperator.ENDS_WITH:
            return field_value is not None and str(field_value).lower().endswith((expected or "").lower())

        elif operator == ConditionOperator.IN:
            return any(self._loose_equals(field_value, item) for item in self._parse_array(expected))

        elif operator == ConditionOperator.NOT_IN:
            return not any(self._loose_equals(field_value, item) for item in self._parse_array(expected))

        elif operator == ConditionOperator.REGEX:
            try:
                pattern = re.compile(expected or "")
            except re.error as e:
                raise ConditionError(f"invalid regex {expected!r}: {e}")
            return pattern.search("" if field_value is None else self._stringify(field_value)) is not None

        elif operator == ConditionOperator.BETWEEN:
            bounds = self._parse_array(expected)
            if len(bounds) != 2:
                raise ConditionError("between expects [min, max]")
            number = self._to_number(field_value)
            return self._to_number(bounds[0]) <= number <= self._to_number(bounds[1])

        return False

    @staticmethod
    def _is_empty(value: Any) -> bool:
        return value is None or value == "" or value == [] or value == {}

    @staticmethod
    def _stringify(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def _loose_equals(self, actual: Any, expected: Any) -> bool:
        """Equality that tolerates "5" vs 5 and "true" vs True"""
        if actual == expected:
            return True
        if actual is None or expected is None:
            return False
        return self._stringify(actual).strip().lower() == self._stringify(expected).strip().lower()

    def _contains(self, field_value: Any, expected: Optional[str]) -> bool:
        if field_value is None:
            return False
        if isinstance(field_value, (list, tuple, set)):
            return any(self._loose_equals(item, self._parse_scalar(expected)) for item in field_value)
        return (expected or "").lower() in self._stringify(field_value).lower()

    @staticmethod
    def _parse_scalar(expected: Optional[str]) -> Any:
        """Interpret expected values as JSON scalars when they parse, else as text"""
        if expected is None:
            return None
        try:
            parsed = json.loads(expected)
        except ValueError:
            return expected
        return parsed if not isinstance(parsed, (list, dict)) else expected

    @staticmethod
    def _parse_array(expected: Optional[str]) -> List[Any]:
        try:
            parsed = json.loads(expected or "")
        except ValueError:
            raise ConditionError(f"expected value {expected!r} is not valid JSON")
        if not isinstance(parsed, list):
            raise ConditionError(f"expected value {expected!r} is not a JSON array")
        return parsed

    @staticmethod
    def _parse_bool(expected: Optional[str]) -> bool:
        text = (expected or "").strip().lower()
        if text in ("true", "1", "yes", "breached"):
            return True
        if text in ("false", "0", "no", "ok", ""):
            return False
        raise ConditionError(f"expected value {expected!r} is not a boolean")

    @staticmethod
    def _to_number(value: Any) -> float:
        if value is None or isinstance(value, bool):
            raise ConditionError(f"{value!r} is not a number")
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConditionError(f"{value!r} is not a number")

    def _compare_numeric(self, field_value: Any, expected: Optional[str], comparator) -> bool:
        """Compare numeric values; a missing field never satisfies a comparison"""
        if field_value is None:
            return False
        return comparator(self._to_number(field_value), self._to_number(expected))
