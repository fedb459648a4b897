"""
Evaluation Service
==================

Long-running multi-map evaluation: the ground truth and its spatial index are
loaded once per session, every processed map appends one row to
<map_file>/<output_suffix>.csv (``map_file`` names the output directory in
this mode) and writes its exports into the same directory.
"""

import csv
import logging
import signal
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np

from .core.error_statistics import MESH_COLUMNS, RECONSTRUCTION_COLUMNS, COMPLETED_COLUMN
from .core.spatial_index import GroundTruthIndex
from .evaluator import MapEvaluator, summary_row
from .utils.config import EvaluationConfig, EvaluationRequest
from .utils.errors import MapEvaluationError, OutputWriteFailure
from .utils.map_io import load_ground_truth, load_map

BUSY_REASON = "busy"


class ShutdownSignal:
    """Turns SIGINT/SIGTERM into a should_continue() callback."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._event = threading.Event()
        self._previous = {}

    def install(self) -> 'ShutdownSignal':
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous[signum] = signal.signal(signum, self._handle)
        return self

    def restore(self):
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()

    def _handle(self, signum, frame):
        self.logger.warning(f"Received signal {signum}, stopping after the current unit of work")
        self._event.set()

    def request_shutdown(self):
        self._event.set()

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def should_continue(self) -> bool:
        return not self._event.is_set()


@dataclass
class ProcessMapRequest:
    map_file: str


@dataclass
class ProcessMapResponse:
    success: bool
    reason: str = ""
    row: Dict[str, Any] = field(default_factory=dict)


class EvaluationSession:
    """
    Resources shared by all maps of a multi-map run: the request, the
    ground truth with its index and the open results file.
    """

    def __init__(self, config: EvaluationConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.request: Optional[EvaluationRequest] = None
        self.ground_truth: Optional[np.ndarray] = None
        self.index: Optional[GroundTruthIndex] = None
        self.output_dir: Optional[Path] = None
        self.csv_path: Optional[Path] = None
        self._csv_file = None
        self._writer: Optional[csv.DictWriter] = None

    @property
    def is_open(self) -> bool:
        return self._csv_file is not None

    def open(self) -> 'EvaluationSession':
        """
        Validate the request, load the ground truth and open the results file.

        Raises:
            InvalidConfigError: If the request is invalid
            LoadFailure: If the ground truth cannot be loaded
            OutputWriteFailure: If the results file cannot be created
        """
        self.request = self.config.request().validate()
        self.logger.info(f"\n{self.request.to_string()}")

        self.ground_truth = load_ground_truth(self.request.ground_truth_pointcloud_file)
        self.index = GroundTruthIndex(self.ground_truth, self.logger)

        self.output_dir = Path(self.request.map_file)
        self.csv_path = self.output_dir / f"{self.request.output_suffix}.csv"
        try:
            self._csv_file = open(self.csv_path, 'w', newline='')
        except OSError as e:
            raise OutputWriteFailure(f"Failed to open output file '{self.csv_path}': {e}") from e

        fieldnames = RECONSTRUCTION_COLUMNS + MESH_COLUMNS + [COMPLETED_COLUMN]
        self._writer = csv.DictWriter(self._csv_file, fieldnames=fieldnames, restval='')
        self._writer.writeheader()
        self._csv_file.flush()
        self.logger.info(f"Evaluation session opened, writing results to {self.csv_path}")
        return self

    def append_row(self, row: Dict[str, Any]):
        if not self.is_open:
            raise OutputWriteFailure("Evaluation session is not open")
        try:
            self._writer.writerow(row)
            self._csv_file.flush()
        except OSError as e:
            raise OutputWriteFailure(f"Failed to write to '{self.csv_path}': {e}") from e

    def close(self):
        if self._csv_file is not None:
            self._csv_file.close()
            self._csv_file = None
            self._writer = None
            self.logger.info("Evaluation session closed")

    def __enter__(self) -> 'EvaluationSession':
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class EvaluationService:
    """Processes maps one at a time within an open EvaluationSession."""

    def __init__(self,
                 session: EvaluationSession,
                 logger: Optional[logging.Logger] = None,
                 shutdown: Optional[ShutdownSignal] = None):
        self.session = session
        self.logger = logger or logging.getLogger(__name__)
        self.shutdown = shutdown or ShutdownSignal(self.logger)
        self._lock = threading.Lock()

    def process_map(self, request: ProcessMapRequest) -> ProcessMapResponse:
        """
        Evaluate one map and append its row to the session's results file.

        Overlapping calls are rejected with reason "busy".
        """
        if not self._lock.acquire(blocking=False):
            self.logger.warning(f"Rejected '{request.map_file}': an evaluation is already running")
            return ProcessMapResponse(success=False, reason=BUSY_REASON)

        try:
            return self._process_map(request)
        except MapEvaluationError as e:
            self.logger.error(str(e))
            return ProcessMapResponse(success=False, reason=str(e))
        finally:
            self._lock.release()

    def _process_map(self, request: ProcessMapRequest) -> ProcessMapResponse:
        if not self.session.is_open:
            return ProcessMapResponse(success=False, reason="session not open")

        evaluation = self.session.request
        evaluator = MapEvaluator(self.session.config, self.logger, self.shutdown.should_continue)
        evaluator.set_ground_truth(self.session.ground_truth, self.session.index)
        evaluator.set_map(load_map(request.map_file))
        self.logger.info(f"Processing map {request.map_file}")

        row = {}
        if evaluation.evaluate:
            row = summary_row(evaluator.compute_errors(evaluation))
            self.session.append_row(row)

        evaluator.run_exports(evaluation, self.session.output_dir)
        if evaluator.interrupted_steps:
            reason = f"interrupted: {', '.join(evaluator.interrupted_steps)}"
            self.logger.warning(f"Map {request.map_file} {reason}")
            return ProcessMapResponse(success=False, reason=reason, row=row)
        return ProcessMapResponse(success=True, row=row)
