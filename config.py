#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration module
Session settings from a key = value properties file plus command line overrides
"""

import os
import numpy as np
from dataclasses import dataclass, fields
from typing import Dict, Optional
from data_structures import SelectionMask
from errors import ConfigError
from logging_utils import get_logger
from nearest_neighbor import NEAREST_NEIGHBOR_METHODS

# Property file keys -> SessionConfig fields
PROPERTY_KEYS = {
    'src': 'src',
    'dest': 'dest',
    'maxRandomRotation': 'max_random_rotation',
    'maxRandomTranslation': 'max_random_translation',
    'activateStartRandomRotation': 'start_random_rotation',
    'activateStartRandomTranslation': 'start_random_translation',
    'nearestNeighbor': 'nearest_neighbor',
    'selection': 'selection',
    'randomProbability': 'random_probability',
    'seed': 'seed',
    'icpSteps': 'icp_steps',
    'pcaFirst': 'pca_first',
    'AverageMatching_RandCycles': 'rand_cycles',
    'AverageMatching_IcpCycles': 'icp_cycles',
    'AverageMatching_MaxRot': 'stats_max_rotation',
    'AverageMatching_MaxTrans': 'stats_max_translation',
    'AverageMatching_PCA_First': 'stats_pca_first',
    'AverageMatching_PairSelection': 'pair_selection',
    'AverageMatching_NoiseLevel': 'noise_level',
    'AverageMatching_Holes': 'holes',
}

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}
_FALSE_VALUES = {'0', 'false', 'no', 'off'}


def _parse_bool(text: str) -> bool:
    value = text.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {text!r}")


def load_properties(filepath: str) -> Dict[str, str]:
    """Read ``key = value`` lines; blank lines and lines starting with '#' are skipped"""
    properties = {}
    with open(filepath, 'r', encoding='utf-8') as f:
        for line_no, raw_line in enumerate(f, start=1):
            line = raw_line.strip()
            if not line or line.startswith('#'):
                continue
            if '=' not in line:
                raise ConfigError(f"{filepath}:{line_no}: expected 'key = value', got {line!r}")
            key, value = line.split('=', 1)
            properties[key.strip()] = value.strip()
    return properties


@dataclass
class SessionConfig:
    """Registration session and statistics settings (angles in radians)"""
    src: str = ""
    dest: str = ""
    max_random_rotation: float = np.pi / 4
    max_random_translation: float = 0.3
    start_random_rotation: bool = False
    start_random_translation: bool = False
    nearest_neighbor: str = "kdtree"
    selection: str = "ALL"
    random_probability: float = 0.5
    seed: Optional[int] = None
    icp_steps: int = 30
    pca_first: bool = False
    rand_cycles: int = 100
    icp_cycles: int = 30
    stats_max_rotation: float = np.pi / 4
    stats_max_translation: float = 0.3
    stats_pca_first: bool = False
    pair_selection: str = "ALL"
    noise_level: float = 0.0
    holes: int = 0

    @classmethod
    def from_properties(cls, properties: Dict[str, str]) -> "SessionConfig":
        config = cls()
        logger = get_logger("config")
        field_names = {f.name for f in fields(cls)}
        for key, value in properties.items():
            name = PROPERTY_KEYS.get(key, key)
            if name not in field_names:
                logger.warning(f"Ignoring unknown property '{key}'")
                continue
            config.set_value(name, value)
        return config

    @classmethod
    def from_file(cls, filepath: str) -> "SessionConfig":
        if not os.path.exists(filepath):
            raise ConfigError(f"Properties file does not exist: {filepath}")
        config = cls.from_properties(load_properties(filepath))
        get_logger("config").info(f"Loaded properties from {os.path.basename(filepath)}")
        return config

    def set_value(self, name: str, value):
        """Set a field, converting strings to the field's type"""
        current = getattr(self, name)
        if not isinstance(value, str):
            setattr(self, name, value)
            return
        try:
            if name == 'seed':
                converted = None if value.strip().lower() in ('', 'none') else int(value)
            elif isinstance(current, bool):
                converted = _parse_bool(value)
            elif isinstance(current, int):
                converted = int(value)
            elif isinstance(current, float):
                converted = float(value)
            else:
                converted = value
        except ValueError as e:
            raise ConfigError(f"Invalid value for '{name}': {e}") from e
        setattr(self, name, converted)

    def update(self, **overrides) -> "SessionConfig":
        """Apply overrides that are not None (command line values)"""
        for name, value in overrides.items():
            if value is None:
                continue
            if not hasattr(self, name):
                raise ConfigError(f"Unknown setting '{name}'")
            self.set_value(name, value)
        return self

    def validate(self):
        if not self.src or not self.dest:
            raise ConfigError("Both 'src' and 'dest' model paths are required")
        if not 0.0 < self.random_probability <= 1.0:
            raise ConfigError(f"random_probability must be in (0, 1], got {self.random_probability}")
        if self.icp_steps < 0 or self.icp_cycles < 0 or self.rand_cycles < 0:
            raise ConfigError("Step and cycle counts must not be negative")
        if self.nearest_neighbor not in NEAREST_NEIGHBOR_METHODS:
            raise ConfigError(f"Unknown nearest neighbor method '{self.nearest_neighbor}'")
        for name in ('selection', 'pair_selection'):
            try:
                SelectionMask.parse(getattr(self, name))
            except ValueError as e:
                raise ConfigError(f"Invalid {name}: {e}") from e
