"""Detector registry — maps type strings to builder functions."""

from __future__ import annotations

from typing import Callable

from tradecore.errors import ConfigurationInvalid
from .detectors import Detector, EngulfingDetector, OutsideBarDetector, ShadowVolumeDetector

DetectorBuilder = Callable[[dict], Detector]

_REGISTRY: dict[str, DetectorBuilder] = {}


def register(name: str, builder: DetectorBuilder) -> None:
    """Register a detector builder under the given name."""
    _REGISTRY[name] = builder


def registered() -> list[str]:
    return sorted(_REGISTRY)


def build_detector(detector_cfg: dict) -> Detector:
    """Build a detector from a ``detector`` config block.

    Parameters
    ----------
    detector_cfg : dict
        Must contain a ``type`` key that maps to a registered builder.
        Remaining keys are passed as ``params`` to the builder.
    """
    cfg = dict(detector_cfg)
    detector_type = cfg.pop("type", None)
    if detector_type is None:
        raise ConfigurationInvalid("detector config must contain a 'type' key")
    if detector_type not in _REGISTRY:
        raise ConfigurationInvalid(
            f"Unknown detector type '{detector_type}'. Registered: {registered()}"
        )
    return _REGISTRY[detector_type](cfg)


def _build_shadow_volume(params: dict) -> ShadowVolumeDetector:
    multiplier = float(params.get("volume_multiplier", 1.5))
    if multiplier <= 0:
        raise ConfigurationInvalid(
            f"volume_multiplier must be positive, got {multiplier}"
        )
    return ShadowVolumeDetector(volume_multiplier=multiplier)


register("shadow_volume", _build_shadow_volume)
register("engulfing", lambda params: EngulfingDetector())
register("outside_bar", lambda params: OutsideBarDetector())
