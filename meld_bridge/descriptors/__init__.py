"""descriptors — Actions, feedbacks, presets and variables derived from session state."""
from .generator import (
    ActionDescriptor,
    DerivedDescriptors,
    FeedbackDescriptor,
    PresetDescriptor,
    Style,
    evaluate_feedback,
    feedback_style,
    generate,
)

__all__ = [
    "ActionDescriptor",
    "DerivedDescriptors",
    "FeedbackDescriptor",
    "PresetDescriptor",
    "Style",
    "evaluate_feedback",
    "feedback_style",
    "generate",
]
