"""Evaluation queue and worker pool."""

from skill_trust.evaluation.queue import EvaluationQueue
from skill_trust.evaluation.rate_limit import SlidingWindowLimiter

__all__ = ["EvaluationQueue", "SlidingWindowLimiter"]
