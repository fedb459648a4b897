"""
Configuration module for map evaluation
=======================================

Centralized configuration management for evaluation requests, coverage,
coloring, visualization and logging parameters.
"""

import copy
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Dict, Any, Optional

import yaml

from .errors import InvalidConfigError


@dataclass
class EvaluationRequest:
    """Options controlling a single evaluation run."""

    verbosity: int = 4

    # Data handling.
    map_file: str = ""
    ground_truth_pointcloud_file: str = ""
    output_suffix: str = "evaluation_data"

    # Evaluation.
    maximum_distance: float = 0.2  # m
    inlier_distance: float = 0.1  # m
    visualize: bool = True
    evaluate: bool = True
    compute_coloring: bool = False
    ignore_truncated_points: bool = False
    color_by_max_error: bool = False  # False: color by average error
    color_by_mesh_distance: bool = True  # True: iterate mesh vertices, False: voxels
    is_single_tsdf: bool = False
    compute_mesh_error: Optional[bool] = None  # None: multi-volume maps only

    # Exports.
    export_mesh: bool = False
    export_labeled_pointcloud: bool = False
    export_coverage_pointcloud: bool = False

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'EvaluationRequest':
        """Build a request from a dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise InvalidConfigError(f"Unknown evaluation options: {sorted(unknown)}")
        return cls(**values)

    def validate(self) -> 'EvaluationRequest':
        """
        Check the request parameters.

        Returns:
            The request itself, for chaining

        Raises:
            InvalidConfigError: If a distance threshold is not positive
        """
        if not self.maximum_distance > 0:
            raise InvalidConfigError(
                f"maximum_distance must be > 0 (got {self.maximum_distance})"
            )
        if not self.inlier_distance > 0:
            raise InvalidConfigError(
                f"inlier_distance must be > 0 (got {self.inlier_distance})"
            )
        return self

    def is_valid(self) -> bool:
        try:
            self.validate()
        except InvalidConfigError:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_string(self) -> str:
        """Readable listing of all options, used for logging."""
        width = max(len(f.name) for f in fields(self))
        lines = ["=" * 20 + " EvaluationRequest " + "=" * 20]
        for key, value in self.to_dict().items():
            lines.append(f"{key:<{width}}: {value}")
        lines.append("=" * 59)
        return "\n".join(lines)


class EvaluationConfig:
    """Configuration for the map evaluation pipeline."""

    # Default configuration
    DEFAULT_CONFIG = {
        'evaluation': EvaluationRequest().to_dict(),

        'coverage': {
            'voxel_size': 0.05,  # m, fixed coverage grid resolution
        },

        'coloring': {
            'max_neighbors_factor': 25000,  # neighbors per m^3, scaled by voxel_size^2
        },

        'visualization': {
            'interactive': False,  # open an Open3D window on publish
            'output_subdir': 'visualization',
            'save_histogram': True,
        },

        'logging': {
            'level': None,  # None: derived from evaluation.verbosity
            'save_to_file': False,
            'log_dir': 'logs',
        }
    }

    def __init__(self, config_dict: Dict[str, Any] = None):
        """
        Initialize configuration.

        Args:
            config_dict: Optional configuration dictionary (overrides defaults)
        """
        self.config = copy.deepcopy(self.DEFAULT_CONFIG)

        if config_dict:
            self._update_nested(self.config, config_dict)

    def _update_nested(self, base: Dict, update: Dict):
        """Recursively update nested dictionary."""
        for key, value in update.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._update_nested(base[key], value)
            else:
                base[key] = value

    def get(self, *keys):
        """Get nested configuration value."""
        value = self.config
        for key in keys:
            value = value[key]
        return value

    def set(self, *keys, value):
        """Set nested configuration value."""
        config = self.config
        for key in keys[:-1]:
            config = config[key]
        config[keys[-1]] = value

    def request(self) -> EvaluationRequest:
        """Build the evaluation request from the 'evaluation' section."""
        return EvaluationRequest.from_dict(self.get('evaluation'))

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> 'EvaluationConfig':
        """Load configuration from YAML file."""
        with open(yaml_path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}
        return cls(config_dict)

    def to_yaml(self, yaml_path: Path):
        """Save configuration to YAML file."""
        with open(yaml_path, 'w') as f:
            yaml.dump(self.config, f, default_flow_style=False, indent=2)

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary."""
        return copy.deepcopy(self.config)


# Convenience function
def load_config(yaml_path: Path = None) -> EvaluationConfig:
    """
    Load configuration from YAML or use defaults.

    Args:
        yaml_path: Optional path to YAML config file

    Returns:
        EvaluationConfig instance

    Raises:
        InvalidConfigError: If a path is given but the file does not exist
    """
    if yaml_path is None:
        return EvaluationConfig()
    if not Path(yaml_path).is_file():
        raise InvalidConfigError(f"Config file not found: {yaml_path}")
    return EvaluationConfig.from_yaml(Path(yaml_path))
