"""Auto-Assignment Engine - Pick an assignee from a candidate pool"""
from typing import Any, Iterable, List, Optional, Set

from ..domain.models import (
    AssignmentResult, AssignmentRule, Candidate, EvaluationContext, LoadSnapshot,
)
from ..domain.enums import AssignmentStrategy
from ..utils.logger import get_logger
from .condition_evaluator import ConditionalLogicEngine, is_empty

logger = get_logger(__name__)

DEFAULT_ROTATION_KEY = "default"


class AutoAssignmentEngine:
    """
    Select assignees deterministically

    The engine holds no state: the round-robin cursor and open-assignment
    counts come in through a LoadSnapshot, and the next cursor value is
    returned in the result for the caller to persist.
    """

    def __init__(self, condition_engine: Optional[ConditionalLogicEngine] = None):
        self.condition_engine = condition_engine or ConditionalLogicEngine()

    def assign(
        self,
        candidates: List[Candidate],
        strategy: AssignmentStrategy,
        load_snapshot: Optional[LoadSnapshot] = None,
        context: Optional[EvaluationContext] = None,
        rule: Optional[AssignmentRule] = None
    ) -> AssignmentResult:
        """
        Pick one candidate using a strategy

        Args:
            candidates: Candidate pool in configured order
            strategy: Selection strategy
            load_snapshot: Open-assignment counts and round-robin cursors
            context: Evaluation snapshot (skills and location are read from it)
            rule: Rule supplying eligibility limits and the rotation key

        Returns:
            AssignmentResult; assignee is None when nobody qualifies
        """
        strategy = AssignmentStrategy(strategy)
        load_snapshot = load_snapshot or LoadSnapshot()
        context = context or EvaluationContext()
        rule_id = rule.rule_id if rule else None
        max_open = rule.max_open_assignments if rule else None

        eligible = [c for c in candidates if self._is_eligible(c, load_snapshot, max_open)]

        if strategy == AssignmentStrategy.ROUND_ROBIN:
            result = self._round_robin(candidates, eligible, load_snapshot, rule_id)
        elif strategy == AssignmentStrategy.LOAD_BALANCE:
            result = self._load_balance(eligible, load_snapshot)
        elif strategy == AssignmentStrategy.SKILL_MATCH:
            result = self._skill_match(eligible, load_snapshot, context, rule)
        else:
            result = self._location_match(eligible, load_snapshot, context, rule)

        result = result.model_copy(update={"strategy": strategy, "rule_id": rule_id})
        if result.assignee is not None:
            logger.info(
                f"Assigned {result.assignee.id} via {strategy.value}",
                extra={"rule_id": rule_id, "strategy": strategy}
            )
        else:
            logger.info(
                f"No assignee found via {strategy.value}: {result.reason}",
                extra={"rule_id": rule_id, "strategy": strategy}
            )
        return result

    def assign_rule(
        self,
        rule: AssignmentRule,
        load_snapshot: Optional[LoadSnapshot] = None,
        context: Optional[EvaluationContext] = None
    ) -> AssignmentResult:
        """Run a single assignment rule"""
        return self.assign(rule.candidates, rule.strategy, load_snapshot, context, rule=rule)

    def assign_by_rules(
        self,
        rules: Iterable[AssignmentRule],
        load_snapshot: Optional[LoadSnapshot] = None,
        context: Optional[EvaluationContext] = None
    ) -> AssignmentResult:
        """
        Evaluate assignment rules by ascending priority

        The first applicable rule that yields an assignee wins.
        """
        context = context or EvaluationContext()
        ordered = sorted((r for r in rules if r.is_active), key=lambda r: r.priority)

        for rule in ordered:
            if not self.condition_engine.evaluate(rule.applies_when, context):
                continue
            result = self.assign_rule(rule, load_snapshot, context)
            if result.assignee is not None:
                return result

        return AssignmentResult(reason="no assignment rule produced an assignee")

    # ========================================================================
    # Strategies
    # ========================================================================

    def _is_eligible(self, candidate: Candidate, load_snapshot: LoadSnapshot, max_open: Optional[int]) -> bool:
        if not candidate.available:
            return False
        if max_open is not None and load_snapshot.open_assignments.get(candidate.id, 0) >= max_open:
            return False
        return True

    def _round_robin(
        self,
        candidates: List[Candidate],
        eligible: List[Candidate],
        load_snapshot: LoadSnapshot,
        rule_id: Optional[str]
    ) -> AssignmentResult:
        if not eligible:
            return AssignmentResult(reason="no eligible candidates")

        eligible_ids = {c.id for c in eligible}
        last_index = load_snapshot.last_indices.get(rule_id or DEFAULT_ROTATION_KEY)
        start = 0 if last_index is None else (last_index + 1) % len(candidates)

        for offset in range(len(candidates)):
            index = (start + offset) % len(candidates)
            if candidates[index].id in eligible_ids:
                return AssignmentResult(assignee=candidates[index], next_index=index)

        return AssignmentResult(reason="no eligible candidates")

    def _load_balance(self, eligible: List[Candidate], load_snapshot: LoadSnapshot) -> AssignmentResult:
        if not eligible:
            return AssignmentResult(reason="no eligible candidates")
        chosen = min(eligible, key=lambda c: (load_snapshot.open_assignments.get(c.id, 0), c.id))
        return AssignmentResult(assignee=chosen)

    def _skill_match(
        self,
        eligible: List[Candidate],
        load_snapshot: LoadSnapshot,
        context: EvaluationContext,
        rule: Optional[AssignmentRule]
    ) -> AssignmentResult:
        required = self._required_skills(context, rule)
        matches = [c for c in eligible if required <= {s.lower() for s in c.skills}]
        if not matches:
            return AssignmentResult(reason=f"no candidate has skills {sorted(required)}")
        return self._load_balance(matches, load_snapshot)

    def _required_skills(self, context: EvaluationContext, rule: Optional[AssignmentRule]) -> Set[str]:
        skills: Set[str] = set()
        if rule is None:
            return skills
        skills.update(s.lower() for s in rule.required_skills)
        if rule.skill_field:
            value = context.data.get(rule.skill_field)
            if isinstance(value, (list, tuple, set)):
                skills.update(str(s).lower() for s in value)
            elif not is_empty(value):
                skills.add(str(value).lower())
        return skills

    def _location_match(
        self,
        eligible: List[Candidate],
        load_snapshot: LoadSnapshot,
        context: EvaluationContext,
        rule: Optional[AssignmentRule]
    ) -> AssignmentResult:
        attribute = rule.location_attribute if rule else "site_id"
        location = self._submission_location(context, attribute)
        if is_empty(location):
            # No location to match against: balance over the whole pool
            return self._load_balance(eligible, load_snapshot)
        matches = [c for c in eligible if c.attributes.get(attribute) == location]
        if not matches:
            return AssignmentResult(reason=f"no candidate with {attribute}={location}")
        return self._load_balance(matches, load_snapshot)

    def _submission_location(self, context: EvaluationContext, attribute: str) -> Any:
        if context.user is not None and not is_empty(context.user.attributes.get(attribute)):
            return context.user.attributes.get(attribute)
        return context.data.get(attribute)
