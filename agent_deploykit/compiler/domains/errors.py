"""Error taxonomy for configuration compilation.

Every error here is raised synchronously from the call that caused it and is
never retried. A failed secret-field extraction at boot time is not raised by
the compiler; the generated fetch script reports it (see SECRET_FIELD_MISSING_EXIT).
"""

# Exit status of the generated fetch script when a secret or one of its
# fields cannot be read at boot time.
SECRET_FIELD_MISSING_EXIT = 3

# Exit status when a fetched value spans several lines and cannot be written
# as a single NAME=value entry.
SECRET_VALUE_MULTILINE_EXIT = 4


class CompileError(Exception):
    """Base class for configuration compilation errors."""
    pass


class ResourceUnavailable(CompileError):
    """A referenced secret or managed resource cannot be located."""
    pass


class MissingCredential(CompileError):
    """A managed resource was expected to own a credential secret and does not."""
    pass


class ConfigurationMismatch(CompileError):
    """A descriptor does not match the resource it references."""
    pass


class CompilerFinalized(CompileError):
    """A mutating call was made after the configuration was finalized."""
    pass
