"""Matching configuration and YAML loader.

Configuration values are validated eagerly: constructing a ``MatchingConfig``
either yields a fully valid, immutable value or raises
``ConfigurationInvalid`` listing every violated constraint. Values are
loaded from config/config.yaml when available, otherwise defaults are used.
"""

import logging
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .errors import ConfigurationInvalid

logger = logging.getLogger(__name__)

# Path to the default configuration file
DEFAULT_CONFIG_PATH = Path("config") / "config.yaml"

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


class SimilarityMetric(Enum):
    """Vector comparison method."""
    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    MANHATTAN = "manhattan"

    @classmethod
    def parse(cls, value: Union[str, "SimilarityMetric"]) -> "SimilarityMetric":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown metric '{value}' (expected one of: {choices})")


# (upper bound of std * sqrt(dimension), score). The first band whose bound
# is >= the measured spread applies; anything beyond the last band is noise.
DEFAULT_DISTRIBUTION_BANDS: Tuple[Tuple[float, float], ...] = (
    (0.3, 0.3),
    (0.6, 0.7),
    (1.2, 1.0),
    (2.0, 0.7),
)
DEFAULT_NOISY_SCORE = 0.4


@dataclass(frozen=True)
class QualityWeighting:
    """Coefficients of the quality-weighting heuristic.

    weight = base + quality_coef * quality_avg + norm_coef * norm_health
             + distribution_coef * distribution_avg, clamped to [floor, ceiling].

    These are a default policy, not a derived law: changing them changes
    which comparisons are accepted.
    """
    base: float = 0.5
    quality_coef: float = 0.2
    norm_coef: float = 0.2
    distribution_coef: float = 0.1
    floor: float = 0.5
    ceiling: float = 1.0
    distribution_bands: Tuple[Tuple[float, float], ...] = DEFAULT_DISTRIBUTION_BANDS
    noisy_score: float = DEFAULT_NOISY_SCORE

    def __post_init__(self):
        # YAML gives lists; keep the value hashable
        bands = tuple((float(b), float(s)) for b, s in self.distribution_bands)
        object.__setattr__(self, "distribution_bands", bands)
        errors = self.validate()
        if errors:
            raise ConfigurationInvalid(errors)

    def validate(self) -> List[str]:
        errors = []
        for name in ("base", "quality_coef", "norm_coef", "distribution_coef", "noisy_score"):
            if getattr(self, name) < 0:
                errors.append(f"quality.{name} must be >= 0")
        if not 0.0 <= self.floor <= self.ceiling <= 1.0:
            errors.append("quality weight bounds must satisfy 0 <= floor <= ceiling <= 1")
        if not self.distribution_bands:
            errors.append("quality.distribution_bands must not be empty")
        bounds = [b for b, _ in self.distribution_bands]
        if bounds != sorted(bounds):
            errors.append("quality.distribution_bands must be sorted by upper bound")
        if any(not 0.0 <= s <= 1.0 for _, s in self.distribution_bands):
            errors.append("quality.distribution_bands scores must be within [0, 1]")
        return errors

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityWeighting":
        _reject_unknown(cls, data, "quality")
        return cls(**data)


@dataclass(frozen=True)
class MatchingConfig:
    """Tunable parameters of the matching engine."""
    # Vector length produced by the extractor
    dimension: int = 512
    # Maximum number of enabled gallery identities
    capacity: int = 50
    # Acceptance cutoff on quality-weighted similarity
    match_threshold: float = 0.85
    metric: SimilarityMetric = SimilarityMetric.COSINE
    # Detector gates
    detection_confidence: float = 0.8
    min_face_size: int = 80
    max_face_size: int = 800
    debug_logging: bool = False
    # Gallery storage
    database_path: str = "face_gallery.db"
    # Vectors with a norm at or below this are rejected
    min_vector_norm: float = 1e-6
    # Dynamic threshold = clamp(mean + sigmas * std, match_threshold, ceiling)
    dynamic_threshold_sigmas: float = 2.0
    dynamic_threshold_ceiling: float = 0.95
    quality: QualityWeighting = field(default_factory=QualityWeighting)

    def __post_init__(self):
        errors = []
        try:
            object.__setattr__(self, "metric", SimilarityMetric.parse(self.metric))
        except ValueError as e:
            errors.append(str(e))
        if isinstance(self.quality, dict):
            try:
                object.__setattr__(self, "quality", QualityWeighting.from_dict(self.quality))
            except ConfigurationInvalid as e:
                errors.extend(e.errors)
            except (TypeError, ValueError) as e:
                errors.append(f"quality: {e}")
        errors.extend(self.validate())
        if errors:
            raise ConfigurationInvalid(errors)

    def validate(self) -> List[str]:
        """Return the list of violated constraints (empty when valid)."""
        errors = []
        if not _is_int(self.dimension) or self.dimension <= 0:
            errors.append(f"dimension must be a positive integer, got {self.dimension!r}")
        if not _is_int(self.capacity) or self.capacity <= 0:
            errors.append(f"capacity must be a positive integer, got {self.capacity!r}")
        if not _in_unit_range(self.match_threshold):
            errors.append(f"match_threshold must be within [0, 1], got {self.match_threshold!r}")
        if not _in_unit_range(self.detection_confidence):
            errors.append(
                f"detection_confidence must be within [0, 1], got {self.detection_confidence!r}"
            )
        if not _is_int(self.min_face_size) or self.min_face_size <= 0:
            errors.append(f"min_face_size must be a positive integer, got {self.min_face_size!r}")
        if not _is_int(self.max_face_size) or self.max_face_size <= 0:
            errors.append(f"max_face_size must be a positive integer, got {self.max_face_size!r}")
        elif _is_int(self.min_face_size) and self.max_face_size <= self.min_face_size:
            errors.append("max_face_size must be greater than min_face_size")
        if not isinstance(self.debug_logging, bool):
            errors.append("debug_logging must be a boolean")
        if not isinstance(self.database_path, str) or not self.database_path.strip():
            errors.append("database_path must be a non-empty string")
        if not _is_number(self.min_vector_norm) or self.min_vector_norm < 0:
            errors.append("min_vector_norm must be >= 0")
        if not _is_number(self.dynamic_threshold_sigmas) or self.dynamic_threshold_sigmas < 0:
            errors.append("dynamic_threshold_sigmas must be >= 0")
        if not _in_unit_range(self.dynamic_threshold_ceiling):
            errors.append("dynamic_threshold_ceiling must be within [0, 1]")
        if not isinstance(self.quality, (QualityWeighting, dict)):
            errors.append("quality must be a mapping of weighting coefficients")
        return errors

    def with_overrides(self, **changes: Any) -> "MatchingConfig":
        """Return a re-validated copy with some fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["metric"] = self.metric.value
        data["quality"]["distribution_bands"] = [
            list(band) for band in self.quality.distribution_bands
        ]
        return data

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "MatchingConfig":
        """Create from a config dictionary.

        Accepts either the full application config (reads its ``matching``
        section) or the section itself.
        """
        section = config.get("matching", config) if config else {}
        if section is None:
            section = {}
        if not isinstance(section, dict):
            raise ConfigurationInvalid(["matching section must be a mapping"])
        _reject_unknown(cls, section, "matching")
        return cls(**section)

    @classmethod
    def from_yaml(cls, config_path: Optional[Union[str, Path]] = None) -> "MatchingConfig":
        """Load and validate configuration from a YAML file."""
        return cls.from_dict(load_config(config_path))


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. Uses default if None.

    Returns:
        Configuration dictionary (empty if the file does not exist).
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    if not path.exists():
        logger.warning(f"Config file {path} not found, using defaults")
        return {}

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationInvalid([f"Failed to parse {path}: {e}"])

    if not isinstance(data, dict):
        raise ConfigurationInvalid([f"{path} must contain a mapping at the top level"])
    return data


def configure_logging(debug: bool = False):
    """Set up root logging for applications embedding the engine."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
    )


def _reject_unknown(cls, data: Dict[str, Any], section: str):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationInvalid([f"Unknown {section} option(s): {', '.join(unknown)}"])


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _in_unit_range(value: Any) -> bool:
    return _is_number(value) and 0.0 <= value <= 1.0
