class ConfigurationError(ValueError):
    """Base class for errors that abort a provisioning pass before any resource is created."""


class ConfigValidationError(ConfigurationError):
    """A declaration or a variable value failed validation."""


class ReferenceResolutionError(ConfigurationError):
    """A reference names something that is not declared, or indexes out of bounds."""
