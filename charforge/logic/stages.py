"""五个固定阶段的状态机与调用令牌（过期响应保护）。"""

from __future__ import annotations

import itertools
import logging
from typing import Any

from charforge.errors import IllegalTransitionError, StaleResultError
from charforge.models import StageStatus, WorkflowStage

logger = logging.getLogger(__name__)

STAGE_DEFINITIONS: tuple[tuple[int, str, str], ...] = (
    (1, "Character Generation", "Generate the core character description from the brief"),
    (2, "Lorebook Generation", "Generate a lorebook dedicated to the character"),
    (3, "Asset Processing", "Categorise and rename uploaded assets for dynamic display"),
    (4, "Modification", "Apply user or AI assisted edits to generated fields"),
    (5, "Final Output", "Package the finished character card and assets"),
)

# 没有任何状态可以回到 pending；completed/failed 只能通过再次调用回到 in_progress
_ALLOWED_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.IN_PROGRESS}),
    StageStatus.IN_PROGRESS: frozenset(
        {StageStatus.IN_PROGRESS, StageStatus.COMPLETED, StageStatus.FAILED}
    ),
    StageStatus.COMPLETED: frozenset({StageStatus.IN_PROGRESS}),
    StageStatus.FAILED: frozenset({StageStatus.IN_PROGRESS}),
}

# 阶段 -> 会使其在途结果过期的阶段（写入同一份状态，或改动了其输入）
_SUPERSEDED_BY: dict[int, tuple[int, ...]] = {
    1: (1, 4),
    2: (1, 2),
    3: (3,),
    4: (1, 4),
    5: (5,),
}


class StageMachine:
    """每个会话一份；同一阶段的新调用会使旧调用的令牌失效。"""

    def __init__(self) -> None:
        self._stages: dict[int, WorkflowStage] = {
            stage_id: WorkflowStage(id=stage_id, name=name, description=description)
            for stage_id, name, description in STAGE_DEFINITIONS
        }
        self._counter = itertools.count(1)
        self._latest: dict[int, int] = {}

    def stages(self) -> list[WorkflowStage]:
        return [stage.model_copy(deep=True) for stage in self._stages.values()]

    def get(self, stage_id: int) -> WorkflowStage:
        try:
            return self._stages[stage_id].model_copy(deep=True)
        except KeyError as exc:
            raise IllegalTransitionError(f"unknown stage {stage_id}") from exc

    def status(self, stage_id: int) -> StageStatus:
        return self._stage(stage_id).status

    def _stage(self, stage_id: int) -> WorkflowStage:
        try:
            return self._stages[stage_id]
        except KeyError as exc:
            raise IllegalTransitionError(f"unknown stage {stage_id}") from exc

    def _transition(self, stage: WorkflowStage, target: StageStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[stage.status]:
            raise IllegalTransitionError(
                f"stage {stage.id}: {stage.status.value} -> {target.value} is not allowed"
            )
        stage.status = target

    def begin(self, stage_id: int) -> int:
        stage = self._stage(stage_id)
        self._transition(stage, StageStatus.IN_PROGRESS)
        stage.errors = []
        token = next(self._counter)
        self._latest[stage_id] = token
        logger.debug("stage %s started with token %s", stage_id, token)
        return token

    def is_current(self, stage_id: int, token: int) -> bool:
        return self._latest.get(stage_id) == token

    def is_superseded(self, stage_id: int, token: int) -> bool:
        """同阶段或相关阶段在 token 之后又有新调用开始时返回 True。"""
        return any(
            self._latest.get(other, 0) > token for other in _SUPERSEDED_BY.get(stage_id, (stage_id,))
        ) or not self.is_current(stage_id, token)

    def ensure_current(self, stage_id: int, token: int) -> None:
        if self.is_superseded(stage_id, token):
            logger.info("discarding stale result for stage %s (token %s)", stage_id, token)
            raise StaleResultError(
                f"Stage {stage_id} result discarded: a newer invocation has started",
                stage=stage_id,
            )

    def complete(self, stage_id: int, token: int, result: Any = None) -> None:
        self.ensure_current(stage_id, token)
        stage = self._stage(stage_id)
        self._transition(stage, StageStatus.COMPLETED)
        stage.result = result

    def fail(self, stage_id: int, token: int, message: str) -> bool:
        """记录失败；令牌已过期时不改动状态并返回 False。"""
        if not self.is_current(stage_id, token):
            return False
        stage = self._stage(stage_id)
        self._transition(stage, StageStatus.FAILED)
        stage.errors = [f"Stage {stage_id} failed: {message}"]
        return True
