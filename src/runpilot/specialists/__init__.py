from runpilot.specialists.approval_judge import ApprovalJudgeAgent, ApprovalOpinion
from runpilot.specialists.base import SpecialistAgent
from runpilot.specialists.critic import CriticAgent
from runpilot.specialists.documenter import CheckpointBrief, DocumenterAgent
from runpilot.specialists.loop_judge import LoopJudgeAgent, Verdict
from runpilot.specialists.planner import PlannerAgent, PlanRevision

__all__ = [
    "ApprovalJudgeAgent",
    "ApprovalOpinion",
    "CheckpointBrief",
    "CriticAgent",
    "DocumenterAgent",
    "LoopJudgeAgent",
    "PlanRevision",
    "PlannerAgent",
    "SpecialistAgent",
    "Verdict",
]
