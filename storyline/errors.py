"""Story definition exceptions.

Definition errors are fatal at load time: a story that fails here is never
activated.
"""


class StoryDefinitionError(ValueError):
    """Raised when a story file is invalid or references missing checkpoints."""


class TriggerError(StoryDefinitionError):
    """Raised when a trigger pattern or its flags cannot be compiled."""
