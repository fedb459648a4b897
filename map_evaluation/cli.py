"""
Command line entry point for map evaluation.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .evaluator import MapEvaluator
from .service import EvaluationService, EvaluationSession, ProcessMapRequest, ShutdownSignal
from .utils.config import EvaluationConfig, load_config
from .utils.errors import MapEvaluationError
from .utils.logging_setup import setup_logging


def _configure(args) -> EvaluationConfig:
    config = load_config(args.config)
    if args.map_file:
        config.set('evaluation', 'map_file', value=args.map_file)
    if args.ground_truth:
        config.set('evaluation', 'ground_truth_pointcloud_file', value=args.ground_truth)
    if args.verbosity is not None:
        config.set('evaluation', 'verbosity', value=args.verbosity)

    log_dir = config.get('logging', 'log_dir') if config.get('logging', 'save_to_file') else None
    setup_logging(verbosity=config.get('evaluation', 'verbosity'),
                  level=config.get('logging', 'level'),
                  log_dir=log_dir)
    return config


def run_single(args, config: EvaluationConfig) -> int:
    shutdown = ShutdownSignal().install()
    try:
        evaluator = MapEvaluator(config, should_continue=shutdown.should_continue)
        return 0 if evaluator.evaluate() else 1
    finally:
        shutdown.restore()


def _map_files(args) -> List[str]:
    if args.maps:
        return list(args.maps)
    return [line.strip() for line in sys.stdin if line.strip()]


def run_multi(args, config: EvaluationConfig) -> int:
    shutdown = ShutdownSignal().install()
    failures = 0
    try:
        with EvaluationSession(config) as session:
            service = EvaluationService(session, shutdown=shutdown)
            for map_file in _map_files(args):
                if not shutdown.should_continue():
                    break
                response = service.process_map(ProcessMapRequest(map_file=map_file))
                if not response.success:
                    failures += 1
    except MapEvaluationError as e:
        logging.getLogger(__name__).error(str(e))
        return 1
    finally:
        shutdown.restore()
    return 1 if failures else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description='Geometric accuracy evaluation of volumetric maps against a ground-truth point cloud',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
MODES:
  single: evaluate the map given by evaluation.map_file (or --map-file)
  multi:  keep the ground truth loaded and evaluate many maps in a row;
          evaluation.map_file (or --map-file) names the output directory

MAP FORMATS:
  .panmap   submap collection (TSDF, mesh and classification layers)
  .vxblx    single TSDF layer

OUTPUT (single mode, next to the map):
  {name}_{output_suffix}.csv           # error statistics
  {name}.mesh.ply                      # export_mesh
  {name}.pointcloud.ply                # export_labeled_pointcloud
  {name}.coverage.ply                  # export_coverage_pointcloud
  {name}_evaluated*.panmap             # compute_coloring
  visualization/                       # snapshots and histograms

Examples:
  # Evaluate one map
  python -m map_evaluation single --config config/evaluation.yaml --map-file maps/run1.panmap

  # Evaluate a series of maps, one results row each
  ls maps/*.panmap | python -m map_evaluation multi --config config/evaluation.yaml --map-file results
        """
    )

    subparsers = parser.add_subparsers(dest='mode', required=True)
    for mode, help_text in (('single', 'Evaluate one map'), ('multi', 'Evaluate a series of maps')):
        sub = subparsers.add_parser(mode, help=help_text)
        sub.add_argument('--config', type=Path, help='YAML configuration file')
        sub.add_argument('--map-file', help='Override evaluation.map_file')
        sub.add_argument('--ground-truth', help='Override evaluation.ground_truth_pointcloud_file')
        sub.add_argument('--verbosity', type=int, help='Override evaluation.verbosity')
        if mode == 'multi':
            sub.add_argument('maps', nargs='*', help='Map files to process (read from stdin when omitted)')

    args = parser.parse_args(argv)

    try:
        config = _configure(args)
    except MapEvaluationError as e:
        logging.getLogger(__name__).error(str(e))
        return 1

    if args.mode == 'single':
        return run_single(args, config)
    return run_multi(args, config)


if __name__ == "__main__":
    sys.exit(main())
