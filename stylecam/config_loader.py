"""
Configuration loader.

Reads a YAML file (default ./config.yaml, override with STYLECAM_CONFIG),
merges it over the built-in defaults and serves values by dotted key:

    config.get("scheduler.face_interval_ms", 100)

A missing file means defaults only. A malformed file is logged and ignored
so the service still starts; validate() reports bad values.
"""

import copy
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from stylecam.services.placement import CORNERS, FIXED_CORNER, POLICIES

logger = logging.getLogger(__name__)

CONFIG_ENV = "STYLECAM_CONFIG"
DEFAULT_CONFIG_PATH = "config.yaml"

DEFAULTS: Dict[str, Any] = {
    "scheduler": {
        "face_interval_ms": 100,
        "clothing_interval_ms": 200,
        "stats_log_interval_s": 5.0,
    },
    "clothing": {
        # Observed variants used 0.6 and 0.4; neither is canonical.
        "threshold": 0.5,
        "working_resolution": 224,
        "placement": {
            "policy": FIXED_CORNER,
            "corner": "bottom-left",
            "box_size_px": 100,
            "margin_px": 10,
            "seed": None,
        },
    },
    "models": {
        "dir": "models",
        "face_weights": "age_gender.pt",
        "clothing_weights": "clothing.pt",
        "metadata": "metadata.json",
        "face_working_size": 416,
    },
    "backend": {
        "use_gpu": True,
        "use_fp16": False,
    },
    "video": {
        "device": 0,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 9000,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


class ConfigLoader:
    def __init__(self, path: Optional[Union[str, Path]] = None, data: Optional[Dict[str, Any]] = None):
        self.path = Path(path or os.getenv(CONFIG_ENV, DEFAULT_CONFIG_PATH))
        if data is not None:
            self._data = _deep_merge(DEFAULTS, data)
        else:
            self._data = _deep_merge(DEFAULTS, self._read_file(self.path))

    @staticmethod
    def _read_file(path: Path) -> Dict[str, Any]:
        if not path.exists():
            logger.info("[Config] %s not found; using defaults", path)
            return {}
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error("[Config] Could not parse %s: %s; using defaults", path, e)
            return {}
        if not isinstance(raw, dict):
            logger.error("[Config] %s must contain a mapping; using defaults", path)
            return {}
        return raw

    def get(self, key: str, default: Any = None) -> Any:
        cur: Any = self._data
        for part in key.split("."):
            if not isinstance(cur, dict) or part not in cur:
                return default
            cur = cur[part]
        return default if cur is None else cur

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    def problems(self) -> List[str]:
        """Human-readable list of invalid settings (empty when valid)."""
        issues = []
        for key in ("scheduler.face_interval_ms", "scheduler.clothing_interval_ms",
                    "clothing.working_resolution", "clothing.placement.box_size_px",
                    "models.face_working_size"):
            value = self.get(key)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                issues.append(f"{key} must be a positive integer (got {value!r})")

        margin = self.get("clothing.placement.margin_px")
        if not isinstance(margin, int) or isinstance(margin, bool) or margin < 0:
            issues.append(f"clothing.placement.margin_px must be a non-negative integer (got {margin!r})")

        threshold = self.get("clothing.threshold")
        if not isinstance(threshold, (int, float)) or isinstance(threshold, bool) or not 0.0 < float(threshold) < 1.0:
            issues.append(f"clothing.threshold must be in (0, 1) (got {threshold!r})")

        policy = self.get("clothing.placement.policy")
        if policy not in POLICIES:
            issues.append(f"clothing.placement.policy must be one of {POLICIES} (got {policy!r})")
        corner = self.get("clothing.placement.corner")
        if corner not in CORNERS:
            issues.append(f"clothing.placement.corner must be one of {CORNERS} (got {corner!r})")
        return issues

    def validate(self) -> bool:
        issues = self.problems()
        for issue in issues:
            logger.warning("[Config] %s", issue)
        return not issues

    def print_summary(self) -> None:
        logger.info("[Config] Loaded from %s", self.path)
        logger.info("[Config] Cadence: face=%sms clothing=%sms",
                    self.get("scheduler.face_interval_ms"), self.get("scheduler.clothing_interval_ms"))
        logger.info("[Config] Clothing: threshold=%s resolution=%s placement=%s (%s)",
                    self.get("clothing.threshold"), self.get("clothing.working_resolution"),
                    self.get("clothing.placement.policy"), self.get("clothing.placement.corner"))
        logger.info("[Config] Models dir: %s | GPU: %s", self.get("models.dir"), self.get("backend.use_gpu"))


def _as_int(v: Any, default: int, minimum: int = 1) -> int:
    if isinstance(v, bool):
        return default
    try:
        value = int(v)
    except (TypeError, ValueError):
        return default
    return value if value >= minimum else default


def _as_float(v: Any, default: float) -> float:
    if isinstance(v, bool):
        return default
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


def _as_bool(v: Any, default: bool) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return bool(v)
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return default


@dataclass(frozen=True)
class PipelineConfig:
    """Typed settings for the detection pipeline. Invalid values fall back to defaults."""
    face_interval_ms: int = 100
    clothing_interval_ms: int = 200
    stats_log_interval_s: float = 5.0
    clothing_threshold: float = 0.5
    working_resolution: int = 224
    placement_policy: str = FIXED_CORNER
    placement_corner: str = "bottom-left"
    box_size_px: int = 100
    margin_px: int = 10
    placement_seed: Optional[int] = None
    models_dir: str = "models"
    face_weights: str = "age_gender.pt"
    clothing_weights: str = "clothing.pt"
    metadata: str = "metadata.json"
    face_working_size: int = 416
    use_gpu: bool = True
    use_fp16: bool = False
    video_device: Union[int, str] = 0

    @classmethod
    def from_loader(cls, loader: ConfigLoader) -> "PipelineConfig":
        d = cls()
        threshold = _as_float(loader.get("clothing.threshold"), d.clothing_threshold)
        if not 0.0 < threshold < 1.0:
            logger.warning("[Config] clothing.threshold=%s out of range; using %s", threshold, d.clothing_threshold)
            threshold = d.clothing_threshold

        policy = loader.get("clothing.placement.policy", d.placement_policy)
        if policy not in POLICIES:
            logger.warning("[Config] Unknown placement policy %r; using %s", policy, d.placement_policy)
            policy = d.placement_policy
        corner = loader.get("clothing.placement.corner", d.placement_corner)
        if corner not in CORNERS:
            logger.warning("[Config] Unknown corner %r; using %s", corner, d.placement_corner)
            corner = d.placement_corner

        seed = loader.get("clothing.placement.seed")
        device = loader.get("video.device", d.video_device)
        if isinstance(device, str) and device.strip().isdigit():
            device = int(device)

        return cls(
            face_interval_ms=_as_int(loader.get("scheduler.face_interval_ms"), d.face_interval_ms),
            clothing_interval_ms=_as_int(loader.get("scheduler.clothing_interval_ms"), d.clothing_interval_ms),
            stats_log_interval_s=_as_float(loader.get("scheduler.stats_log_interval_s"), d.stats_log_interval_s),
            clothing_threshold=threshold,
            working_resolution=_as_int(loader.get("clothing.working_resolution"), d.working_resolution),
            placement_policy=policy,
            placement_corner=corner,
            box_size_px=_as_int(loader.get("clothing.placement.box_size_px"), d.box_size_px),
            margin_px=_as_int(loader.get("clothing.placement.margin_px"), d.margin_px, minimum=0),
            placement_seed=_as_int(seed, 0, minimum=0) if seed is not None else None,
            models_dir=str(loader.get("models.dir", d.models_dir)),
            face_weights=str(loader.get("models.face_weights", d.face_weights)),
            clothing_weights=str(loader.get("models.clothing_weights", d.clothing_weights)),
            metadata=str(loader.get("models.metadata", d.metadata)),
            face_working_size=_as_int(loader.get("models.face_working_size"), d.face_working_size),
            use_gpu=_as_bool(loader.get("backend.use_gpu"), d.use_gpu),
            use_fp16=_as_bool(loader.get("backend.use_fp16"), d.use_fp16),
            video_device=device,
        )

    def model_path(self, name: str) -> Path:
        return Path(self.models_dir) / name


config = ConfigLoader()
