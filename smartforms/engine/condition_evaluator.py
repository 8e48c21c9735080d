"""Conditional Logic Engine - Safe evaluation of condition trees and field actions"""
import re
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from ..domain.models import (
    Condition, ConditionGroup, ConditionalAction, ConditionalRule,
    ConditionalResult, EvaluationContext, FieldUpdate, FieldUpdateMap, SmartField,
)
from ..domain.enums import (
    ConditionOperator, ConditionSource, ConditionalActionType, FieldProperty,
    LogicOperator, ValueType,
)
from ..utils.logger import get_logger
from ..utils.time import to_datetime

logger = get_logger(__name__)

_MISSING = object()
_FIELD_REF = re.compile(r"^\{([A-Za-z0-9_.\-]+)\}$")
_USER_REF_PREFIX = "$user."


class CoercionError(ValueError):
    """Value cannot be interpreted as the declared value type"""


def is_empty(value: Any) -> bool:
    """None, undefined, blank strings and empty collections count as empty"""
    if value is None or value is _MISSING:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def to_number(value: Any) -> Optional[float]:
    """Numeric value of ints, floats and numeric strings; None otherwise"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def merge_field_updates(*update_maps: Optional[FieldUpdateMap]) -> FieldUpdateMap:
    """
    Merge field-update maps in call order

    Later maps override earlier ones per field/property, so passing the
    maps in execution order gives "most recently executed wins".
    """
    merged: FieldUpdateMap = {}
    for update_map in update_maps:
        if not update_map:
            continue
        for field_id, properties in update_map.items():
            merged.setdefault(field_id, {}).update(properties)
    return merged


def referenced_fields(group: Optional[ConditionGroup]) -> Set[str]:
    """Collect the data field ids a condition tree reads"""
    fields: Set[str] = set()
    if group is None:
        return fields
    for node in group.conditions:
        if isinstance(node, ConditionGroup):
            fields |= referenced_fields(node)
        elif node.source == ConditionSource.FIELD:
            fields.add(node.field_id.split(".")[0])
    return fields


class ConditionalLogicEngine:
    """
    Evaluate condition trees and conditional field rules

    Uses a closed operator set over pydantic models - no eval() or exec().
    Evaluation never raises for bad data: unknown fields, uncoercible
    values and broken patterns make the owning condition false.
    """

    def evaluate(
        self,
        condition_group: Optional[ConditionGroup],
        context: EvaluationContext
    ) -> bool:
        """
        Evaluate a condition group

        Args:
            condition_group: Group of conditions with AND/OR logic
            context: Evaluation snapshot

        Returns:
            True if conditions are met (an empty or missing group is true)
        """
        if condition_group is None or not condition_group.conditions:
            return True

        results = (self._evaluate_node(node, context) for node in condition_group.conditions)
        if condition_group.operator == LogicOperator.OR:
            return any(results)
        return all(results)

    def _evaluate_node(self, node: Any, context: EvaluationContext) -> bool:
        if isinstance(node, ConditionGroup):
            return self.evaluate(node, context)
        return self.evaluate_condition(node, context)

    def evaluate_condition(self, condition: Condition, context: EvaluationContext) -> bool:
        """Evaluate a single condition against the context"""
        if self._is_unknown_field(condition, context):
            logger.warning(
                f"Condition references unknown field '{condition.field_id}'",
                extra={"field_id": condition.field_id}
            )
            return False

        left = self._resolve_source(condition, context)
        value_type = condition.value_type
        if condition.source == ConditionSource.TIME and value_type == ValueType.AUTO:
            value_type = ValueType.DATE
        try:
            result = self._compare(left, condition.operator, condition.value, value_type)
        except CoercionError as e:
            logger.warning(
                f"Condition on '{condition.field_id}' could not coerce values: {e}",
                extra={"field_id": condition.field_id}
            )
            return False
        except re.error as e:
            logger.warning(
                f"Invalid pattern in condition on '{condition.field_id}': {e}",
                extra={"field_id": condition.field_id}
            )
            return False

        logger.debug(
            f"Condition {condition.field_id} {condition.operator.value} {condition.value!r} -> {result}",
            extra={"field_id": condition.field_id}
        )
        return result

    # ========================================================================
    # Value resolution
    # ========================================================================

    def _is_unknown_field(self, condition: Condition, context: EvaluationContext) -> bool:
        if condition.source != ConditionSource.FIELD or context.known_fields is None:
            return False
        return condition.field_id.split(".")[0] not in context.known_fields

    def _resolve_source(self, condition: Condition, context: EvaluationContext) -> Any:
        source = condition.source
        if source == ConditionSource.FIELD:
            return self._get_path(context.data, condition.field_id)
        if source == ConditionSource.USER_ROLE:
            return list(context.user.roles) if context.user else []
        if source == ConditionSource.USER_ATTRIBUTE:
            return self._get_user_value(condition.field_id, context)
        if source == ConditionSource.SUBMISSION_STATUS:
            status = context.submission.status
            return status.value if status is not None else None
        if source == ConditionSource.TIME:
            return context.now
        return None

    def _get_path(self, data: Dict[str, Any], path: str) -> Any:
        """
        Get a value using dot notation

        Example: "address.city" -> data["address"]["city"]
        """
        if path in data:
            return data[path]
        value: Any = data
        for part in path.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return None
        return value

    def _get_user_value(self, path: str, context: EvaluationContext) -> Any:
        if context.user is None:
            return None
        head = path.split(".")[0]
        if head in ("id", "name", "roles") and "." not in path:
            return getattr(context.user, head)
        if head == "attributes":
            path = path[len("attributes."):]
        return self._get_path(context.user.attributes, path)

    def resolve_value(self, value: Any, context: EvaluationContext) -> Any:
        """
        Resolve "{field_id}" and "$user.<attr>" references in an action value

        Other values are returned unchanged.
        """
        if not isinstance(value, str):
            return value
        if value.startswith(_USER_REF_PREFIX):
            return self._get_user_value(value[len(_USER_REF_PREFIX):], context)
        match = _FIELD_REF.match(value)
        if match:
            return self._get_path(context.data, match.group(1))
        return value

    # ========================================================================
    # Comparison
    # ========================================================================

    def _compare(
        self,
        field_value: Any,
        operator: ConditionOperator,
        compare_value: Any,
        value_type: ValueType
    ) -> bool:
        """Compare values using operator"""

        if operator == ConditionOperator.IS_EMPTY:
            return is_empty(field_value)

        elif operator == ConditionOperator.IS_NOT_EMPTY:
            return not is_empty(field_value)

        elif operator == ConditionOperator.EQUALS:
            return self._equals(field_value, compare_value, value_type)

        elif operator == ConditionOperator.NOT_EQUALS:
            return not self._equals(field_value, compare_value, value_type)

        elif operator == ConditionOperator.CONTAINS:
            return self._contains(field_value, compare_value)

        elif operator == ConditionOperator.NOT_CONTAINS:
            return not self._contains(field_value, compare_value)

        elif operator == ConditionOperator.STARTS_WITH:
            if is_empty(field_value):
                return False
            return str(field_value).lower().startswith(str(compare_value).lower())

        elif operator == ConditionOperator.ENDS_WITH:
            if is_empty(field_value):
                return False
            return str(field_value).lower().endswith(str(compare_value).lower())

        elif operator == ConditionOperator.GREATER_THAN:
            return self._compare_ordered(field_value, compare_value, value_type, lambda a, b: a > b)

        elif operator == ConditionOperator.LESS_THAN:
            return self._compare_ordered(field_value, compare_value, value_type, lambda a, b: a < b)

        elif operator == ConditionOperator.GREATER_OR_EQUAL:
            return self._compare_ordered(field_value, compare_value, value_type, lambda a, b: a >= b)

        elif operator == ConditionOperator.LESS_OR_EQUAL:
            return self._compare_ordered(field_value, compare_value, value_type, lambda a, b: a <= b)

        elif operator == ConditionOperator.BETWEEN:
            low, high = compare_value
            return (
                self._compare_ordered(field_value, low, value_type, lambda a, b: a >= b)
                and self._compare_ordered(field_value, high, value_type, lambda a, b: a <= b)
            )

        elif operator == ConditionOperator.IN:
            return self._in(field_value, compare_value, value_type)

        elif operator == ConditionOperator.NOT_IN:
            return not self._in(field_value, compare_value, value_type)

        elif operator == ConditionOperator.MATCHES_PATTERN:
            if is_empty(field_value):
                return False
            return re.search(str(compare_value), str(field_value)) is not None

        return False

    def _equals(self, left: Any, right: Any, value_type: ValueType) -> bool:
        if is_empty(left) or is_empty(right):
            return is_empty(left) and is_empty(right)
        if value_type != ValueType.AUTO:
            return self._coerce(left, value_type) == self._coerce(right, value_type)
        if left == right:
            return True
        left_number, right_number = self._try_number(left), self._try_number(right)
        if left_number is not None and right_number is not None:
            return left_number == right_number
        return False

    def _contains(self, container: Any, item: Any) -> bool:
        if is_empty(container):
            return False
        if isinstance(container, (list, tuple, set)):
            return item in container
        return str(item).lower() in str(container).lower()

    def _in(self, left: Any, options: Any, value_type: ValueType) -> bool:
        if not isinstance(options, (list, tuple, set)):
            options = [options]
        if isinstance(left, (list, tuple, set)):
            # Multi-valued fields match when any selected value is listed
            return any(self._in(item, options, value_type) for item in left)
        return any(self._equals(left, option, value_type) for option in options)

    def _compare_ordered(
        self,
        left: Any,
        right: Any,
        value_type: ValueType,
        comparator: Callable[[Any, Any], bool]
    ) -> bool:
        """Compare values after coercing both sides to a common ordered type"""
        if is_empty(left) or is_empty(right):
            return False
        if value_type == ValueType.AUTO:
            a, b = self._auto_ordered(left, right)
        else:
            a, b = self._coerce(left, value_type), self._coerce(right, value_type)
        try:
            return comparator(a, b)
        except TypeError as e:
            raise CoercionError(str(e)) from e

    def _auto_ordered(self, left: Any, right: Any):
        left_number, right_number = self._try_number(left), self._try_number(right)
        if left_number is not None and right_number is not None:
            return left_number, right_number
        left_date, right_date = to_datetime(left), to_datetime(right)
        if left_date is not None and right_date is not None:
            return left_date, right_date
        return str(left), str(right)

    # ========================================================================
    # Coercion
    # ========================================================================

    def _try_number(self, value: Any) -> Optional[float]:
        return to_number(value)

    def _coerce(self, value: Any, value_type: ValueType) -> Any:
        if value_type == ValueType.STRING:
            return str(value)
        if value_type == ValueType.NUMBER:
            number = self._try_number(value)
            if number is None:
                raise CoercionError(f"{value!r} is not a number")
            return number
        if value_type == ValueType.DATE:
            parsed: Optional[datetime] = to_datetime(value)
            if parsed is None:
                raise CoercionError(f"{value!r} is not a date")
            return parsed
        if value_type == ValueType.BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, (int, float)):
                return value != 0
            text = str(value).strip().lower()
            if text in ("true", "yes", "1", "on"):
                return True
            if text in ("false", "no", "0", "off"):
                return False
            raise CoercionError(f"{value!r} is not a boolean")
        return value

    # ========================================================================
    # Conditional rules
    # ========================================================================

    def execute_action(self, action: ConditionalAction, context: EvaluationContext) -> FieldUpdate:
        """Translate one conditional action into a field delta"""
        action_type = action.action_type
        target = action.target_field_id

        if action_type == ConditionalActionType.SHOW_FIELD:
            return FieldUpdate(field_id=target, property=FieldProperty.VISIBLE, value=True)
        if action_type == ConditionalActionType.HIDE_FIELD:
            return FieldUpdate(field_id=target, property=FieldProperty.VISIBLE, value=False)
        if action_type == ConditionalActionType.SET_REQUIRED:
            return FieldUpdate(field_id=target, property=FieldProperty.REQUIRED, value=True)
        if action_type == ConditionalActionType.SET_OPTIONAL:
            return FieldUpdate(field_id=target, property=FieldProperty.REQUIRED, value=False)
        if action_type == ConditionalActionType.SET_VALUE:
            return FieldUpdate(
                field_id=target,
                property=FieldProperty.VALUE,
                value=self.resolve_value(action.value, context)
            )
        if action_type == ConditionalActionType.CLEAR_VALUE:
            return FieldUpdate(field_id=target, property=FieldProperty.VALUE, value=None)
        if action_type == ConditionalActionType.SET_OPTIONS:
            return FieldUpdate(field_id=target, property=FieldProperty.OPTIONS, value=list(action.value))
        if action_type == ConditionalActionType.DISABLE_FIELD:
            return FieldUpdate(field_id=target, property=FieldProperty.DISABLED, value=True)
        if action_type == ConditionalActionType.ENABLE_FIELD:
            return FieldUpdate(field_id=target, property=FieldProperty.DISABLED, value=False)
        # SET_READONLY
        return FieldUpdate(field_id=target, property=FieldProperty.READONLY, value=True)

    def default_values(self, fields: Iterable[SmartField], context: EvaluationContext) -> List[FieldUpdate]:
        """
        Value updates for empty fields that declare a default_value

        Defaults go through resolve_value, so "$user.<attr>" and
        "{field_id}" references are filled from the context. A reference
        that resolves to nothing yields no update.
        """
        updates: List[FieldUpdate] = []
        for field in fields:
            if field.default_value is None or not is_empty(context.data.get(field.field_id)):
                continue
            value = self.resolve_value(field.default_value, context)
            if value is None:
                continue
            updates.append(FieldUpdate(field_id=field.field_id, property=FieldProperty.VALUE, value=value))
        return updates

    def apply_conditional_rules(
        self,
        rules: Iterable[ConditionalRule],
        context: EvaluationContext
    ) -> ConditionalResult:
        """
        Apply conditional rules in configured order

        Every matching rule contributes its actions; when two rules touch the
        same field property, the rule later in the list wins.

        Args:
            rules: Conditional rules in precedence order
            context: Evaluation snapshot

        Returns:
            ConditionalResult with the ordered updates and the merged map
        """
        applied: List[str] = []
        updates: List[FieldUpdate] = []
        field_updates: FieldUpdateMap = {}

        for rule in rules:
            if not rule.is_active:
                continue
            if not self.evaluate(rule.conditions, context):
                continue
            applied.append(rule.rule_id)
            for action in rule.actions:
                update = self.execute_action(action, context).model_copy(update={"rule_id": rule.rule_id})
                updates.append(update)
                field_updates.setdefault(update.field_id, {})[update.property.value] = update.value

        logger.debug(f"Conditional rules applied: {applied}")
        return ConditionalResult(applied_rules=applied, updates=updates, field_updates=field_updates)

    def process_field_change(
        self,
        field_id: str,
        rules: Iterable[ConditionalRule],
        context: EvaluationContext
    ) -> ConditionalResult:
        """Re-apply only the rules whose conditions read the changed field"""
        affected = [r for r in rules if field_id in referenced_fields(r.conditions)]
        return self.apply_conditional_rules(affected, context)
