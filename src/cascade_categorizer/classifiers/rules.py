import re
from collections.abc import Callable
from datetime import datetime

from cascade_categorizer.classifiers.base import Stage, StageOutcome
from cascade_categorizer.domain.matching import (
    amount_in_range,
    compile_pattern,
    contains_text,
    parse_amount_range,
    wildcard_to_regex,
)
from cascade_categorizer.errors import NotFoundError, RuleValidationError
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import (
    CategoryRule,
    Method,
    RuleMatch,
    RuleTestResult,
    RuleType,
    Transaction,
    utcnow,
)
from cascade_categorizer.services.usage import RULE_MATCHED, UsageEvent, UsageRecorder
from cascade_categorizer.storage.base import Storage

logger = get_logger(__name__)

MAX_TEST_EXAMPLES = 5


def rule_sort_key(rule: CategoryRule) -> tuple[int, str]:
    return -rule.priority, rule.id


def validate_rule(rule: CategoryRule) -> None:
    """Raise RuleValidationError if the rule could misbehave at evaluation time."""
    if not rule.organization_id:
        raise RuleValidationError("organization_id is required")
    if rule.category_id <= 0:
        raise RuleValidationError("category_id must be positive")
    if not rule.pattern:
        raise RuleValidationError("pattern is required")
    if not 0.0 <= rule.confidence <= 1.0:
        raise RuleValidationError("confidence must be between 0.0 and 1.0")
    if rule.priority < 0:
        raise RuleValidationError("priority must be non-negative")

    try:
        rule_type = RuleType(rule.rule_type)
    except ValueError as exc:
        raise RuleValidationError(f"invalid rule type: {rule.rule_type}") from exc

    if rule_type is RuleType.AMOUNT_RANGE:
        try:
            parse_amount_range(rule.pattern)
        except ValueError as exc:
            raise RuleValidationError(f"invalid amount range '{rule.pattern}': {exc}") from exc
        return

    if rule_type is RuleType.REGEX_PATTERN or rule.is_regex:
        try:
            re.compile(rule.pattern)
        except re.error as exc:
            raise RuleValidationError(f"invalid regex pattern '{rule.pattern}': {exc}") from exc


def rule_matches(rule: CategoryRule, transaction: Transaction) -> bool:
    rule_type = rule.rule_type

    if rule_type == RuleType.MERCHANT_PATTERN:
        if not transaction.merchant_name:
            return False
        if rule.is_regex:
            return compile_pattern(rule.pattern, rule.case_sensitive).search(transaction.merchant_name) is not None
        regex = compile_pattern(wildcard_to_regex(rule.pattern), rule.case_sensitive)
        return regex.match(transaction.merchant_name) is not None

    if rule_type == RuleType.DESCRIPTION_KEYWORD:
        if not transaction.description:
            return False
        if rule.is_regex:
            return compile_pattern(rule.pattern, rule.case_sensitive).search(transaction.description) is not None
        return contains_text(transaction.description, rule.pattern, rule.case_sensitive)

    if rule_type == RuleType.AMOUNT_RANGE:
        low, high = parse_amount_range(rule.pattern)
        return amount_in_range(transaction.amount, low, high)

    if rule_type == RuleType.REGEX_PATTERN:
        text = " ".join(part for part in (transaction.description, transaction.merchant_name) if part)
        if not text:
            return False
        return compile_pattern(rule.pattern, rule.case_sensitive).search(text) is not None

    return False


class RuleEngine(Stage):
    method = Method.RULE_BASED

    def __init__(
        self,
        storage: Storage,
        usage: UsageRecorder,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.usage = usage
        self.clock = clock
        usage.register(RULE_MATCHED, self._record_usage)

    def evaluate(self, transaction: Transaction, record_usage: bool = True) -> StageOutcome:
        category_id, confidence, trace = self.evaluate_rules(transaction, record_usage=record_usage)
        if category_id is None:
            explanation = "No matching rules found"
        else:
            match = trace[0]
            explanation = f"Matched rule: {match.pattern} (priority: {match.priority})"
        return StageOutcome(
            category_id=category_id,
            confidence=confidence,
            explanation=explanation,
            rule_matches=trace,
        )

    def evaluate_rules(
        self, transaction: Transaction, record_usage: bool = True
    ) -> tuple[int | None, float, list[RuleMatch]]:
        rules = sorted(self.storage.list_rules(transaction.organization_id), key=rule_sort_key)
        for rule in rules:
            try:
                matched = rule_matches(rule, transaction)
            except (re.error, ValueError) as exc:
                # Rules are validated on write; a stored rule that no longer compiles is skipped.
                logger.warning("[RULES] Skipping broken rule %s: %s", rule.id, exc)
                continue
            if not matched:
                continue

            logger.debug(
                "[RULES] Rule %s (%s '%s', priority %s) matched transaction %s",
                rule.id,
                rule.rule_type.value,
                rule.pattern,
                rule.priority,
                transaction.id,
            )
            if record_usage:
                self.usage.publish(
                    UsageEvent(
                        RULE_MATCHED,
                        transaction.organization_id,
                        {"rule_id": rule.id, "used_at": self.clock()},
                    )
                )
            trace = [
                RuleMatch(
                    rule_id=rule.id,
                    rule_type=rule.rule_type,
                    pattern=rule.pattern,
                    confidence=rule.confidence,
                    priority=rule.priority,
                )
            ]
            return rule.category_id, rule.confidence, trace

        return None, 0.0, []

    def _record_usage(self, event: UsageEvent) -> None:
        self.storage.record_rule_usage(event.payload["rule_id"], event.payload["used_at"])

    # CRUD

    def add_rule(self, rule: CategoryRule) -> CategoryRule:
        validate_rule(rule)
        created = self.storage.create_rule(rule)
        logger.info("[RULES] Created rule %s for org %s: %s '%s'", rule.id, rule.organization_id, rule.rule_type.value, rule.pattern)
        return created

    def update_rule(self, rule: CategoryRule) -> CategoryRule:
        existing = self.storage.get_rule(rule.id)
        if existing is None or existing.organization_id != rule.organization_id:
            raise NotFoundError(f"rule {rule.id} not found")
        validate_rule(rule)
        return self.storage.update_rule(rule)

    def delete_rule(self, organization_id: str, rule_id: str) -> None:
        existing = self.storage.get_rule(rule_id)
        if existing is None or existing.organization_id != organization_id:
            raise NotFoundError(f"rule {rule_id} not found")
        self.storage.delete_rule(rule_id)
        logger.info("[RULES] Deleted rule %s for org %s", rule_id, organization_id)

    def get_rule(self, organization_id: str, rule_id: str) -> CategoryRule:
        rule = self.storage.get_rule(rule_id)
        if rule is None or rule.organization_id != organization_id:
            raise NotFoundError(f"rule {rule_id} not found")
        return rule

    def get_rules(self, organization_id: str) -> list[CategoryRule]:
        return sorted(self.storage.list_rules(organization_id), key=rule_sort_key)

    def test_rule(self, rule: CategoryRule, transactions: list[Transaction] | None = None) -> RuleTestResult:
        """Dry-run a rule over historical transactions without touching usage statistics."""
        validate_rule(rule)
        if transactions is None:
            transactions = self.storage.list_transactions(rule.organization_id)

        matched = [tx for tx in transactions if rule_matches(rule, tx)]
        labeled = [tx for tx in matched if tx.category_id is not None]
        agreeing = sum(1 for tx in labeled if tx.category_id == rule.category_id)
        accuracy = agreeing / len(labeled) if labeled else 0.0

        return RuleTestResult(
            rule=rule,
            matched_transactions=len(matched),
            accuracy_rate=accuracy,
            examples=matched[:MAX_TEST_EXAMPLES],
        )
