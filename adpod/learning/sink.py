"""
Outcome sinks.

One `PodResult` is emitted per executed pod to an analytics collaborator.
Shipped sinks log the summary or append it as a JSON line.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Union

from .. import config
from ..models import PodResult

logger = logging.getLogger(__name__)


class OutcomeSink(ABC):
    """Receiver of per-pod results."""

    @abstractmethod
    def emit(self, result: PodResult) -> None:
        pass


class LoggingOutcomeSink(OutcomeSink):
    """Writes a one-line summary per pod to the log."""

    def emit(self, result: PodResult) -> None:
        logger.info(
            f"Pod {result.position}: filled {result.slots_filled}/{result.slots_attempted}, "
            f"revenue=${result.total_revenue:.4f}, failures={result.failure_reasons or '-'}"
        )


class JsonlOutcomeSink(OutcomeSink):
    """
    Appends each pod result as one JSON line.

    Attributes:
        path: Output file, defaulting to OUTCOME_LOG_PATH under the data
            directory; parent directories are created on first write.
    """

    def __init__(self, path: Union[str, Path] = config.OUTCOME_LOG_PATH) -> None:
        self.path = Path(path)

    def emit(self, result: PodResult) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(json.dumps(result.to_dict()) + "\n")
        except IOError as e:
            logger.error(f"Failed to write pod outcome to {self.path}: {e}")


class MemoryOutcomeSink(OutcomeSink):
    """Keeps results in memory (simulations and tests)."""

    def __init__(self) -> None:
        self.results: list[PodResult] = []

    def emit(self, result: PodResult) -> None:
        self.results.append(result)
