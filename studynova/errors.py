"""Error taxonomy shared by every StudyNova component.

All of these are recoverable: components raise them at their boundary and the
chat loop turns them into a user-visible notification.
"""

from __future__ import annotations


class StudyNovaError(Exception):
    """Base class for all recoverable assistant errors."""


class ValidationError(StudyNovaError):
    """Input rejected before any work was started (empty text, busy composer)."""


class GenerationError(StudyNovaError):
    """Remote generation failed, timed out or returned an unusable reply."""


class ExtractionError(StudyNovaError):
    """Document could not be parsed, or one of its pages failed to extract."""


class UnsupportedFormatError(ExtractionError):
    """Uploaded file is not a page-extractable document."""


class RecognitionError(StudyNovaError):
    """Speech-to-text session failed (no speech, no permission, device busy)."""


class SynthesisError(StudyNovaError):
    """Text-to-speech engine failed or is unavailable."""


class UnsupportedError(StudyNovaError):
    """A host capability (microphone, recognizer) is missing."""
