"""Context block budgeting: fit prioritized blocks into the model window."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Literal

from loguru import logger

from sage_agent.agent.tokens import Content, TokenEstimateOptions, TokenEstimator, content_text, with_text

if TYPE_CHECKING:
    from sage_agent.config.schema import BudgetConfig

Role = Literal["system", "user", "assistant"]

DEFAULT_TRUNCATION_NOTICE = (
    "Note: Context was truncated to fit the model window. "
    "Some older transcript/summary content may be omitted."
)
USER_TRUNCATION_NOTICE = "User message truncated to fit context. Showing most recent portion:\n"


class BlockId(str, Enum):
    BASE_SYSTEM = "base_system"
    MEMORY = "memory"
    PROFILE_SUMMARY = "profile_summary"
    ROLLING_SUMMARY = "rolling_summary"
    RELATIONSHIP_HINTS = "relationship_hints"
    EXPERT_PACKETS = "expert_packets"
    TRANSCRIPT = "transcript"
    INTENT_HINT = "intent_hint"
    REPLY_CONTEXT = "reply_context"
    REPLY_REFERENCE = "reply_reference"
    USER = "user"
    TRUNC_NOTICE = "trunc_notice"


TRUNCATION_ORDER: tuple[BlockId, ...] = (
    BlockId.TRANSCRIPT,
    BlockId.EXPERT_PACKETS,
    BlockId.ROLLING_SUMMARY,
    BlockId.PROFILE_SUMMARY,
    BlockId.RELATIONSHIP_HINTS,
    BlockId.INTENT_HINT,
    BlockId.REPLY_CONTEXT,
    BlockId.REPLY_REFERENCE,
    BlockId.MEMORY,
    BlockId.USER,
)

# Blocks whose most recent content sits at the end.
_KEEP_TAIL = frozenset({BlockId.TRANSCRIPT, BlockId.REPLY_CONTEXT, BlockId.REPLY_REFERENCE})


@dataclass(slots=True)
class ContextBlock:
    """One labeled, priority-ranked unit of model input."""
    id: BlockId
    role: Role
    content: Content
    priority: int
    truncatable: bool = True
    hard_max_tokens: int | None = None
    min_tokens: int | None = None


@dataclass(frozen=True, slots=True)
class ModelLimits:
    model: str
    max_context_tokens: int
    max_output_tokens: int
    safety_margin_tokens: int
    vision_enabled: bool = True
    estimation: TokenEstimateOptions = field(default_factory=TokenEstimateOptions)


@dataclass(frozen=True, slots=True)
class BudgetPlan:
    max_context_tokens: int
    max_output_tokens: int
    reserved_output_tokens: int
    safety_margin_tokens: int
    available_input_tokens: int


@dataclass(slots=True)
class BudgetResult:
    blocks: list[ContextBlock]
    total_tokens: int
    available_tokens: int
    truncated: list[BlockId] = field(default_factory=list)
    dropped: list[BlockId] = field(default_factory=list)
    notice_inserted: bool = False

    @property
    def altered(self) -> bool:
        return bool(self.truncated or self.dropped)


def resolve_model_limits(budget: BudgetConfig, model: str | None = None) -> ModelLimits:
    """Merge per-model overrides over the configured budget defaults."""
    normalized = (model or "default").strip().lower() or "default"
    override = budget.model_overrides.get(normalized)
    chars_per_token = budget.chars_per_token
    estimation = TokenEstimateOptions(
        chars_per_token=chars_per_token,
        code_chars_per_token=max(3.0, chars_per_token - 0.5),
        image_tokens=budget.image_tokens,
        message_overhead_tokens=budget.message_overhead_tokens,
    )
    limits = ModelLimits(
        model=normalized,
        max_context_tokens=budget.max_input_tokens,
        max_output_tokens=budget.reserved_output_tokens,
        safety_margin_tokens=budget.safety_margin_tokens,
        estimation=estimation,
    )
    if override is None:
        return limits
    estimation = TokenEstimateOptions(
        chars_per_token=override.chars_per_token or estimation.chars_per_token,
        code_chars_per_token=override.code_chars_per_token or estimation.code_chars_per_token,
        image_tokens=override.image_tokens if override.image_tokens is not None else estimation.image_tokens,
        message_overhead_tokens=estimation.message_overhead_tokens,
    )
    return replace(
        limits,
        max_context_tokens=override.max_context_tokens or limits.max_context_tokens,
        max_output_tokens=override.max_output_tokens or limits.max_output_tokens,
        safety_margin_tokens=(
            override.safety_margin_tokens
            if override.safety_margin_tokens is not None
            else limits.safety_margin_tokens
        ),
        vision_enabled=override.vision_enabled if override.vision_enabled is not None else limits.vision_enabled,
        estimation=estimation,
    )


def plan_budget(limits: ModelLimits, reserved_output_tokens: int | None = None) -> BudgetPlan:
    """Derive the input budget for a model; never negative."""
    reserved = limits.max_output_tokens if reserved_output_tokens is None else reserved_output_tokens
    available = limits.max_context_tokens - reserved - limits.safety_margin_tokens
    return BudgetPlan(
        max_context_tokens=limits.max_context_tokens,
        max_output_tokens=limits.max_output_tokens,
        reserved_output_tokens=reserved,
        safety_margin_tokens=limits.safety_margin_tokens,
        available_input_tokens=max(0, available),
    )


def truncate_text(
    text: str,
    max_tokens: int,
    estimate: Callable[[str], int],
    keep: Literal["head", "tail"] = "head",
) -> str:
    """
    Longest prefix (``keep="head"``) or suffix (``keep="tail"``) of ``text``
    whose estimate is within ``max_tokens``.

    Bisects over character length, so any monotone estimator is honoured
    without re-estimating more than O(log n) candidates.
    """
    if max_tokens <= 0 or not text:
        return ""
    if estimate(text) <= max_tokens:
        return text

    def _cut(length: int) -> str:
        if keep == "tail":
            return text[len(text) - length:].lstrip()
        return text[:length].rstrip()

    low, high = 0, len(text)
    best = ""
    while low <= high:
        mid = (low + high) // 2
        candidate = _cut(mid)
        if estimate(candidate) <= max_tokens:
            best = candidate
            low = mid + 1
        else:
            high = mid - 1
    return best


class ContextBudgeter:
    """
    Reduce a block list until its estimated cost fits the plan.

    Steps: per-block hard ceilings; priority-ordered shrink or drop; forced
    shrink of the user block; drop of leftover non-user blocks by ascending
    priority. Surviving blocks keep their input order and the user block is
    always kept.
    """

    def __init__(
        self,
        estimator: TokenEstimator | None = None,
        *,
        notice_enabled: bool = True,
        notice_text: str = DEFAULT_TRUNCATION_NOTICE,
    ):
        self.estimator = estimator or TokenEstimator()
        self.notice_enabled = notice_enabled
        self.notice_text = notice_text

    def block_tokens(self, block: ContextBlock) -> int:
        return self.estimator.estimate_content(block.content) + self.estimator.message_overhead

    def total_tokens(self, blocks: list[ContextBlock]) -> int:
        return sum(self.block_tokens(block) for block in blocks)

    def truncate_block(self, block: ContextBlock, max_tokens: int) -> ContextBlock:
        """Shrink a block's content to ``max_tokens`` in its natural direction."""
        text = content_text(block.content)
        image_cost = self.estimator.estimate_content(block.content) - self.estimator.estimate_text(text)
        text_budget = max(0, max_tokens - image_cost)
        estimate = self.estimator.estimate_text

        if block.id is BlockId.USER:
            notice_tokens = estimate(USER_TRUNCATION_NOTICE)
            kept = truncate_text(text, max(0, text_budget - notice_tokens), estimate, keep="tail")
            if kept == text:
                new_text = text
            elif notice_tokens >= text_budget:
                new_text = truncate_text(text, text_budget, estimate, keep="tail")
            else:
                new_text = f"{USER_TRUNCATION_NOTICE}{kept}".rstrip()
                if estimate(new_text) > text_budget:
                    new_text = truncate_text(text, text_budget, estimate, keep="tail")
        else:
            keep: Literal["head", "tail"] = "tail" if block.id in _KEEP_TAIL else "head"
            new_text = truncate_text(text, text_budget, estimate, keep=keep)
        return replace(block, content=with_text(block.content, new_text))

    def _shrink_at(
        self,
        blocks: list[ContextBlock],
        index: int,
        available: int,
        floor: int,
    ) -> ContextBlock | None:
        """Largest truncation of ``blocks[index]`` in [floor, current] that fits, or None."""
        block = blocks[index]
        current = self.estimator.estimate_content(block.content)
        if current <= floor:
            return None
        others = self.total_tokens(blocks) - self.block_tokens(block)
        best: ContextBlock | None = None
        low, high = floor, current - 1
        while low <= high:
            mid = (low + high) // 2
            candidate = self.truncate_block(block, mid)
            if others + self.block_tokens(candidate) <= available:
                best = candidate
                low = mid + 1
            else:
                high = mid - 1
        return best

    def budget(self, blocks: list[ContextBlock], plan: BudgetPlan) -> BudgetResult:
        available = plan.available_input_tokens
        user_count = sum(1 for block in blocks if block.id is BlockId.USER)
        if user_count != 1:
            raise ValueError(f"Expected exactly one user block, got {user_count}")

        truncated: list[BlockId] = []
        dropped: list[BlockId] = []

        working: list[ContextBlock] = []
        for block in blocks:
            if block.hard_max_tokens is not None and (
                self.estimator.estimate_content(block.content) > block.hard_max_tokens
            ):
                block = self.truncate_block(block, block.hard_max_tokens)
                truncated.append(block.id)
            working.append(block)

        total = self.total_tokens(working)
        for block_id in TRUNCATION_ORDER:
            if total <= available:
                break
            index = 0
            while index < len(working) and total > available:
                block = working[index]
                if block.id is not block_id:
                    index += 1
                    continue
                if not block.truncatable:
                    if block_id is not BlockId.USER:
                        logger.debug(f"Dropping non-truncatable block {block_id.value}")
                        del working[index]
                        dropped.append(block_id)
                        total = self.total_tokens(working)
                        continue
                    index += 1
                    continue

                shrunk = self._shrink_at(working, index, available, block.min_tokens or 0)
                if shrunk is not None:
                    working[index] = shrunk
                    truncated.append(block_id)
                    total = self.total_tokens(working)
                elif block_id is not BlockId.USER:
                    floor = block.min_tokens or 0
                    if self.estimator.estimate_content(block.content) > floor:
                        working[index] = self.truncate_block(block, floor)
                        truncated.append(block_id)
                    total = self.total_tokens(working)

                if total > available and block_id is not BlockId.USER:
                    logger.debug(f"Dropping block {block_id.value}; still over budget after shrink")
                    del working[index]
                    dropped.append(block_id)
                    total = self.total_tokens(working)
                    continue
                index += 1

        if total > available:
            total = self._force_user_shrink(working, available, truncated)

        if total > available:
            for victim in sorted(
                (b for b in working if b.id is not BlockId.USER), key=lambda b: b.priority
            ):
                if total <= available:
                    break
                logger.warning(f"Dropping {victim.id.value} block as last resort to fit {available} tokens")
                working = [b for b in working if b is not victim]
                dropped.append(victim.id)
                total = self.total_tokens(working)
            if total > available:
                logger.warning(
                    f"Context budget of {available} tokens is below the minimum user message cost ({total})"
                )

        result = BudgetResult(
            blocks=working,
            total_tokens=total,
            available_tokens=available,
            truncated=truncated,
            dropped=dropped,
        )
        if result.altered and self.notice_enabled:
            self._insert_notice(result)
        if result.altered:
            logger.debug(
                f"Context budgeted to {result.total_tokens}/{available} tokens "
                f"(truncated={[b.value for b in truncated]}, dropped={[b.value for b in dropped]})"
            )
        return result

    def _force_user_shrink(
        self,
        working: list[ContextBlock],
        available: int,
        truncated: list[BlockId],
    ) -> int:
        index = next(i for i, block in enumerate(working) if block.id is BlockId.USER)
        user = working[index]
        shrunk = self._shrink_at(working, index, available, 0)
        if shrunk is None and isinstance(user.content, list):
            # Images cannot be shortened; retry with the text alone.
            shrunk = self._shrink_text_only(working, index, available)
        if shrunk is None:
            shrunk = replace(user, content="")
        if shrunk.content != user.content:
            logger.warning("Forcing user message below its minimum to fit context budget")
            working[index] = shrunk
            truncated.append(BlockId.USER)
        return self.total_tokens(working)

    def _shrink_text_only(
        self,
        working: list[ContextBlock],
        index: int,
        available: int,
    ) -> ContextBlock | None:
        user = working[index]
        text_only = replace(user, content=content_text(user.content) or "[image omitted]")
        candidate = [*working[:index], text_only, *working[index + 1:]]
        if self.total_tokens(candidate) <= available:
            return text_only
        return self._shrink_at(candidate, index, available, 0)

    def _insert_notice(self, result: BudgetResult) -> None:
        notice = ContextBlock(
            id=BlockId.TRUNC_NOTICE,
            role="system",
            content=self.notice_text,
            priority=95,
            truncatable=False,
        )
        cost = self.block_tokens(notice)
        if result.total_tokens + cost > result.available_tokens:
            return
        base_index = next(
            (i for i, block in enumerate(result.blocks) if block.id is BlockId.BASE_SYSTEM), -1
        )
        result.blocks.insert(base_index + 1, notice)
        result.total_tokens += cost
        result.notice_inserted = True


def budget_blocks(
    blocks: list[ContextBlock],
    plan: BudgetPlan,
    *,
    estimator: TokenEstimator | None = None,
    notice_enabled: bool = True,
) -> BudgetResult:
    """Functional entry point around ``ContextBudgeter``."""
    return ContextBudgeter(estimator, notice_enabled=notice_enabled).budget(blocks, plan)
