"""
Exception types shared by the repositories, the game layer and the routes.
"""


class CampfireError(Exception):
    """Base class for application errors."""


class ConfigurationError(CampfireError):
    """A required credential, endpoint or schema capability is missing."""


class GameStateMissingError(CampfireError):
    """The singleton game_state document does not exist."""


class OptionSynthesisError(CampfireError):
    """The text generator could not produce three valid path options."""


class ConcurrentUpdateError(CampfireError):
    """A compare-and-swap retry loop ran out of attempts."""


class TextGenerationError(CampfireError):
    """Every configured model failed to return text."""


class SchedulerAuthError(CampfireError):
    """The scheduler's shared secret was missing or wrong."""


class StoryGenerationError(CampfireError):
    """A bible or episode draft could not be produced from model output."""
