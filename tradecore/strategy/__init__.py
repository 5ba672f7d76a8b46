from .signal import Direction, PendingSignal, RawSignal
from .detectors import (
    Detector,
    EngulfingDetector,
    OutsideBarDetector,
    ShadowVolumeDetector,
    resolve_conflict,
)
from .confirmation import ConfirmationConfig, ConfirmationStep, Outcome, SignalConfirmation
from .registry import build_detector, register

__all__ = [
    "Direction",
    "PendingSignal",
    "RawSignal",
    "Detector",
    "EngulfingDetector",
    "OutsideBarDetector",
    "ShadowVolumeDetector",
    "resolve_conflict",
    "ConfirmationConfig",
    "ConfirmationStep",
    "Outcome",
    "SignalConfirmation",
    "build_detector",
    "register",
]
