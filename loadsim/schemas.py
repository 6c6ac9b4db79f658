"""Response contracts for the operations the workloads issue.

Each HTTP operation tag decodes its body through one of these models; a body
that does not match surfaces as a ``decode`` call failure.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class _Contract(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class Goal(_Contract):
    goal_id: str = Field(validation_alias=AliasChoices("goalId", "goal_id", "id"))
    status: Optional[str] = None
    claimed_at: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("claimedAt", "claimed_at")
    )
    is_active: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("isActive", "is_active")
    )

    @property
    def claimable(self) -> bool:
        return self.status == "completed" and not self.claimed_at


class Challenge(_Contract):
    challenge_id: str = Field(
        validation_alias=AliasChoices("challengeId", "challenge_id", "id")
    )
    goals: list[Goal] = Field(default_factory=list)


class ChallengesResponse(_Contract):
    challenges: list[Challenge] = Field(default_factory=list)

    def completed_goals(self) -> list[tuple[str, str]]:
        """(challenge_id, goal_id) pairs that are completed but not yet claimed."""
        return [
            (challenge.challenge_id, goal.goal_id)
            for challenge in self.challenges
            for goal in challenge.goals
            if goal.claimable
        ]


class InitializeResponse(_Contract):
    assigned_goals: Optional[list[Any]] = Field(
        default=None, validation_alias=AliasChoices("assignedGoals", "assigned_goals")
    )
    new_assignments: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("newAssignments", "new_assignments")
    )


class SelectGoalsResponse(_Contract):
    selected_goals: list[Any] = Field(
        default_factory=list,
        validation_alias=AliasChoices("selectedGoals", "selected_goals"),
    )


class SetActiveResponse(_Contract):
    goal_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("goalId", "goal_id")
    )
    is_active: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("isActive", "is_active")
    )


__all__ = [
    "Goal",
    "Challenge",
    "ChallengesResponse",
    "InitializeResponse",
    "SelectGoalsResponse",
    "SetActiveResponse",
]
