from __future__ import annotations
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from ..core.utils import format_seconds, sanitize_object
from ..executor.base import SandboxOutcome

RESULTS_PATH = Path("results") / "results.json"
MAX_RESULTS_BYTES = 100 * 1024

READ_FAILED_MESSAGE = "Could not read grading results."
PARSE_FAILED_MESSAGE = "Could not parse the grading results."
TOO_LARGE_MESSAGE = (
    "The grading results were larger than 100 KiB. "
    "Try removing print statements from your code to reduce the output size. "
    "If the problem persists, please contact course staff or a proctor."
)


def timeout_message(timeout_s: float) -> str:
    return f"Grading timed out after {format_seconds(timeout_s)} seconds."


def exit_code_message(exit_code: Optional[int]) -> str:
    return f"The grading container exited with code {exit_code}."


@dataclass
class Extraction:
    succeeded: bool
    results: Any = None
    message: Optional[str] = None


class ResultExtractor:
    """
    Turns a sandbox outcome into the succeeded/results/message triple of a
    SandboxResult. The results file is only read for a succeeded outcome and
    is rejected, never truncated, above max_bytes.
    """

    def __init__(self, max_bytes: int = MAX_RESULTS_BYTES,
                 sanitizer: Callable[[Any], Any] = sanitize_object):
        self.max_bytes = max_bytes
        self.sanitizer = sanitizer

    def extract(self, workdir: Path, outcome: SandboxOutcome, logger) -> Extraction:
        if not outcome.succeeded:
            return Extraction(succeeded=False, message=self.failure_message(outcome))

        logger.debug("reading_results", path=str(RESULTS_PATH))
        path = workdir / RESULTS_PATH
        try:
            with open(path, "rb") as f:
                data = f.read(self.max_bytes + 1)
        except OSError as e:
            logger.error("results_unreadable", error=str(e))
            return Extraction(succeeded=False, message=READ_FAILED_MESSAGE)

        if len(data) > self.max_bytes:
            logger.error("results_too_large", limit_bytes=self.max_bytes)
            return Extraction(succeeded=False, message=TOO_LARGE_MESSAGE)

        try:
            parsed = json.loads(data)
        except ValueError as e:
            logger.error("results_unparseable", error=str(e))
            return Extraction(succeeded=False, message=PARSE_FAILED_MESSAGE)

        return Extraction(succeeded=True, results=self.sanitizer(parsed))

    @staticmethod
    def failure_message(outcome: SandboxOutcome) -> str:
        if outcome.timed_out:
            return timeout_message(outcome.timeout_s)
        if outcome.error:
            return outcome.error
        return exit_code_message(outcome.exit_code)
