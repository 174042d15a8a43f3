"""Early-termination policies for hyperparameter sweeps."""

import math
from typing import Any, Dict, List, Optional, Set

import numpy as np

from mlstudio.exceptions import SweepConfigurationError


class EarlyTerminationPolicy:
    """
    Base policy.

    A policy looks at the primary metric series reported by each child run
    and decides which active runs to cancel. The series of finished runs
    take part in the comparison but only active runs are canceled.

    Args:
        evaluation_interval: Evaluate at every n-th report
        delay_evaluation: Skip the first n reports
    """

    name = "base"

    def __init__(self, evaluation_interval: int = 1, delay_evaluation: int = 0):
        if evaluation_interval < 1:
            raise SweepConfigurationError("evaluation_interval must be at least 1")
        if delay_evaluation < 0:
            raise SweepConfigurationError("delay_evaluation must not be negative")
        self.evaluation_interval = evaluation_interval
        self.delay_evaluation = delay_evaluation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy": self.name,
            "evaluation_interval": self.evaluation_interval,
            "delay_evaluation": self.delay_evaluation,
        }

    def should_evaluate(self, k: int) -> bool:
        """Whether report number ``k`` (1-based) is an evaluation point."""
        return k > self.delay_evaluation and k % self.evaluation_interval == 0

    def runs_to_terminate(
        self,
        series: Dict[str, List[float]],
        active: Set[str],
        maximize: bool
    ) -> Set[str]:
        """
        Runs to cancel.

        Args:
            series: Primary metric values per run id, in report order
            active: Ids of runs that are still running
            maximize: Whether larger metric values are better

        Returns:
            Subset of ``active``
        """
        longest = max((len(values) for values in series.values()), default=0)
        terminate: Set[str] = set()
        for k in range(1, longest + 1):
            if self.should_evaluate(k):
                reported = {rid: values for rid, values in series.items() if len(values) >= k}
                terminate |= self._evaluate(k, reported, active, maximize)
        return terminate & active

    def _evaluate(
        self,
        k: int,
        reported: Dict[str, List[float]],
        active: Set[str],
        maximize: bool
    ) -> Set[str]:
        raise NotImplementedError


class NoTerminationPolicy(EarlyTerminationPolicy):
    """Never cancels anything."""

    name = "none"

    def _evaluate(self, k, reported, active, maximize) -> Set[str]:
        return set()


class BanditPolicy(EarlyTerminationPolicy):
    """
    Cancels runs that fall outside a slack of the best run at the same report.

    When maximizing, a run is canceled when its value is below
    ``best / (1 + slack_factor)`` or ``best - slack_amount``.
    """

    name = "bandit"

    def __init__(
        self,
        slack_factor: Optional[float] = None,
        slack_amount: Optional[float] = None,
        evaluation_interval: int = 1,
        delay_evaluation: int = 0
    ):
        super().__init__(evaluation_interval, delay_evaluation)
        if (slack_factor is None) == (slack_amount is None):
            raise SweepConfigurationError("Exactly one of slack_factor or slack_amount must be given")
        if (slack_factor is not None and slack_factor < 0) or (slack_amount is not None and slack_amount < 0):
            raise SweepConfigurationError("Slack must not be negative")
        self.slack_factor = slack_factor
        self.slack_amount = slack_amount

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"slack_factor": self.slack_factor, "slack_amount": self.slack_amount})
        return data

    def _threshold(self, best: float, maximize: bool) -> float:
        if self.slack_factor is not None:
            return best / (1 + self.slack_factor) if maximize else best * (1 + self.slack_factor)
        return best - self.slack_amount if maximize else best + self.slack_amount

    def _evaluate(self, k, reported, active, maximize) -> Set[str]:
        values = {rid: s[k - 1] for rid, s in reported.items()}
        if not values:
            return set()
        best = max(values.values()) if maximize else min(values.values())
        threshold = self._threshold(best, maximize)
        return {
            rid for rid, value in values.items()
            if rid in active and (value < threshold if maximize else value > threshold)
        }


class MedianStoppingPolicy(EarlyTerminationPolicy):
    """Cancels runs whose best value so far is worse than the median of the other runs' running averages."""

    name = "median_stopping"

    def _evaluate(self, k, reported, active, maximize) -> Set[str]:
        averages = {rid: float(np.mean(s[:k])) for rid, s in reported.items()}
        terminate = set()
        for rid in active & reported.keys():
            others = [avg for other, avg in averages.items() if other != rid]
            if not others:
                continue
            median = float(np.median(others))
            best = max(reported[rid][:k]) if maximize else min(reported[rid][:k])
            if (best < median) if maximize else (best > median):
                terminate.add(rid)
        return terminate


class TruncationSelectionPolicy(EarlyTerminationPolicy):
    """Cancels the worst ``truncation_percentage`` percent of runs at each evaluation."""

    name = "truncation_selection"

    def __init__(self, truncation_percentage: int, evaluation_interval: int = 1, delay_evaluation: int = 0):
        super().__init__(evaluation_interval, delay_evaluation)
        if not 1 <= truncation_percentage <= 99:
            raise SweepConfigurationError("truncation_percentage must be between 1 and 99")
        self.truncation_percentage = truncation_percentage

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["truncation_percentage"] = self.truncation_percentage
        return data

    def _evaluate(self, k, reported, active, maximize) -> Set[str]:
        count = math.floor(len(reported) * self.truncation_percentage / 100)
        if count == 0:
            return set()
        # worst first
        ranked = sorted(reported, key=lambda rid: reported[rid][k - 1], reverse=not maximize)
        return set(ranked[:count]) & active
