"""
Map Evaluator
=============

Runs one evaluation request end to end:
1. Load the ground-truth cloud and the map (.panmap or .vxblx)
2. Compute the reconstruction error (and the mesh error for multi-volume maps)
   and write them to <map_dir>/<map_name>_<output_suffix>.csv
3. Export mesh / labeled point cloud / coverage point cloud
4. Color the map by error and save it as <map_name>_evaluated*.panmap
5. Publish a visualization snapshot

Failures of any step are logged and reported as a False return value.
"""

import csv
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

import numpy as np

from .core.coverage import CoverageBuilder, CoverageGrid, CoverageResult
from .core.error_coloring import ErrorColorizer, colored_map_suffix
from .core.error_statistics import COMPLETED_COLUMN, EvaluationSummary
from .core.exporters import MapExporter
from .core.map_query import MapDistanceQuery, create_map_query
from .core.mesh_error import MeshErrorEvaluator
from .core.reconstruction_error import ReconstructionErrorEvaluator
from .core.spatial_index import GroundTruthIndex
from .core.visualization import SubmapVisualizer, save_error_histogram
from .utils.config import EvaluationConfig, EvaluationRequest
from .utils.errors import LoadFailure, MapEvaluationError, OutputWriteFailure
from .utils.map_io import LoadedMap, load_ground_truth, load_map, save_submap_collection


def mesh_error_enabled(request: EvaluationRequest, loaded_map: LoadedMap) -> bool:
    """Mesh error runs for multi-volume maps unless configured otherwise, never for a bare layer."""
    if loaded_map.is_layer:
        return False
    if request.compute_mesh_error is None:
        return not request.is_single_tsdf
    return bool(request.compute_mesh_error)


def summary_row(summaries: Dict[str, EvaluationSummary]) -> Dict[str, object]:
    """CSV row for the passes that ran; Completed is False if any pass was interrupted."""
    row = {}
    for kind, summary in summaries.items():
        row.update(zip(EvaluationSummary.csv_header(kind), summary.csv_values(kind)))
    row[COMPLETED_COLUMN] = all(summary.completed for summary in summaries.values())
    return row


def summary_header(kinds) -> list:
    header = []
    for kind in kinds:
        header.extend(EvaluationSummary.csv_header(kind))
    header.append(COMPLETED_COLUMN)
    return header


class MapEvaluator:
    """Evaluates maps against a ground-truth point cloud."""

    def __init__(self,
                 config: Optional[EvaluationConfig] = None,
                 logger: Optional[logging.Logger] = None,
                 should_continue: Optional[Callable[[], bool]] = None):
        """
        Initialize the evaluator.

        Args:
            config: Pipeline configuration (defaults when omitted)
            logger: Optional logger instance
            should_continue: Cooperative cancellation check for long passes
        """
        self.config = config or EvaluationConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.should_continue = should_continue

        self.ground_truth: Optional[np.ndarray] = None
        self.index: Optional[GroundTruthIndex] = None
        self.loaded_map: Optional[LoadedMap] = None
        self.reconstruction_errors = np.zeros(0)
        self.interrupted_steps: List[str] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def set_ground_truth(self, points: np.ndarray, index: Optional[GroundTruthIndex] = None):
        """Use these ground-truth points; the spatial index is rebuilt unless given."""
        self.ground_truth = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        self.index = index if index is not None else GroundTruthIndex(self.ground_truth, self.logger)

    def set_map(self, loaded_map: LoadedMap):
        self.loaded_map = loaded_map

    def map_query(self) -> MapDistanceQuery:
        return create_map_query(self.loaded_map.submaps, self.loaded_map.tsdf_layer)

    def _show_progress(self, request: EvaluationRequest) -> bool:
        return request.verbosity >= 2

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def compute_errors(self, request: EvaluationRequest) -> Dict[str, EvaluationSummary]:
        """
        Run the reconstruction pass and, where enabled, the mesh pass.

        Returns:
            Summaries keyed by 'reconstruction' and 'mesh'
        """
        show_progress = self._show_progress(request)
        reconstruction = ReconstructionErrorEvaluator(self.map_query(), self.logger, show_progress)
        summaries = {
            'reconstruction': reconstruction.evaluate(self.ground_truth, request, self.should_continue),
        }
        self.reconstruction_errors = reconstruction.statistics.values()

        if mesh_error_enabled(request, self.loaded_map):
            mesh = MeshErrorEvaluator(self.index, self.logger, show_progress)
            summaries['mesh'] = mesh.evaluate(self.loaded_map.submaps, request, self.should_continue)
        self.interrupted_steps.extend(kind for kind, summary in summaries.items() if not summary.completed)
        return summaries

    def compute_coverage(self, request: EvaluationRequest) -> CoverageResult:
        grid = CoverageGrid.from_points(self.ground_truth, self.config.get('coverage', 'voxel_size'))
        builder = CoverageBuilder(self.map_query(), self.logger, self._show_progress(request))
        return builder.build(grid, self.should_continue)

    def run_exports(self, request: EvaluationRequest, output_dir: Path):
        """Write the export artifacts enabled in the request."""
        exporter = MapExporter(output_dir, self.loaded_map.name, self.logger)

        if request.export_mesh or request.export_labeled_pointcloud:
            if self.loaded_map.is_layer:
                self.logger.warning("Mesh and labeled point cloud exports need a panoptic map, skipped")
            else:
                if request.export_mesh:
                    exporter.export_mesh(self.loaded_map.submaps)
                if request.export_labeled_pointcloud:
                    exporter.export_labeled_pointcloud(self.loaded_map.submaps, request.is_single_tsdf)

        if request.export_coverage_pointcloud:
            if self.ground_truth is None:
                self.set_ground_truth(load_ground_truth(request.ground_truth_pointcloud_file))
            coverage = self.compute_coverage(request)
            if not coverage.completed:
                self.interrupted_steps.append('coverage')
            exporter.export_coverage_pointcloud(coverage)

    def compute_coloring(self, request: EvaluationRequest) -> Optional[Path]:
        """Color the map by error and save the colored map next to the original."""
        if self.loaded_map.is_layer:
            self.logger.warning("Error coloring needs a panoptic map, skipped")
            return None

        colorizer = ErrorColorizer(self.index, self.logger, self._show_progress(request),
                                   self.config.get('coloring', 'max_neighbors_factor'))
        if not colorizer.colorize(self.loaded_map.submaps, request, self.should_continue):
            self.logger.warning("Coloring incomplete, colored map not saved")
            self.interrupted_steps.append('coloring')
            return None

        path = self.loaded_map.directory / f"{self.loaded_map.name}{colored_map_suffix(request)}.panmap"
        save_submap_collection(self.loaded_map.submaps, path)
        self.logger.info(f"Saved colored map to {path}")
        return path

    def publish_visualization(self):
        output_dir = self.loaded_map.directory / self.config.get('visualization', 'output_subdir')
        visualizer = SubmapVisualizer(output_dir, self.config.get('visualization', 'interactive'),
                                      self.logger)
        map_data = self.loaded_map.tsdf_layer if self.loaded_map.is_layer else self.loaded_map.submaps
        visualizer.publish(map_data, self.loaded_map.name)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def evaluate(self, request: Optional[EvaluationRequest] = None) -> bool:
        """
        Process one request.

        Args:
            request: Evaluation request; taken from the config when omitted

        Returns:
            True if every enabled step succeeded and ran to completion
        """
        try:
            request = request or self.config.request()
            self._evaluate(request)
        except MapEvaluationError as e:
            self.logger.error(str(e))
            return False
        if self.interrupted_steps:
            self.logger.warning(f"Interrupted before completion: {', '.join(self.interrupted_steps)}")
            return False
        return True

    def _evaluate(self, request: EvaluationRequest):
        self.interrupted_steps = []
        request.validate()
        self.logger.info(f"Processing:\n{request.to_string()}")

        # Ground truth
        if request.evaluate or request.compute_coloring:
            if request.ground_truth_pointcloud_file:
                self.set_ground_truth(load_ground_truth(request.ground_truth_pointcloud_file))
            if self.ground_truth is None:
                raise LoadFailure("No ground truth point cloud loaded")

        # Map
        if request.map_file:
            self.set_map(load_map(request.map_file))
            kind = "voxblox layer" if self.loaded_map.is_layer else "panoptic map"
            self.logger.info(f"Loaded the target {kind} from {request.map_file}")
        if self.loaded_map is None:
            raise LoadFailure("No map loaded")

        if request.evaluate:
            self._write_evaluation(request)

        self.run_exports(request, self.loaded_map.directory)

        if request.compute_coloring:
            self.logger.info("Computing visualization coloring...")
            self.compute_coloring(request)

        if request.visualize:
            self.logger.info("Publishing visualization...")
            self.publish_visualization()

        self.logger.info("Done.")

    def _write_evaluation(self, request: EvaluationRequest):
        csv_path = self.loaded_map.directory / f"{self.loaded_map.name}_{request.output_suffix}.csv"
        try:
            csv_file = open(csv_path, 'w', newline='')
        except OSError as e:
            raise OutputWriteFailure(f"Failed to open output file '{csv_path}': {e}") from e

        with csv_file:
            summaries = self.compute_errors(request)
            writer = csv.DictWriter(csv_file, fieldnames=summary_header(summaries.keys()))
            writer.writeheader()
            writer.writerow(summary_row(summaries))
        self.logger.info(f"Evaluation results written to {csv_path}")

        if self.config.get('visualization', 'save_histogram') and len(self.reconstruction_errors):
            histogram_path = (self.loaded_map.directory / self.config.get('visualization', 'output_subdir')
                              / f"{self.loaded_map.name}_error_histogram.png")
            save_error_histogram(self.reconstruction_errors, histogram_path,
                                 request.maximum_distance, logger=self.logger)
