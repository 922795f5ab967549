"""Custom exceptions for the UEFI netboot harness."""


class NetbootError(RuntimeError):
    """Base class for errors that abort a harness run."""


class ArtifactNotFound(NetbootError):
    """The boot artifact does not exist."""


class ArtifactUnreadable(NetbootError):
    """The boot artifact exists but cannot be read."""


class ProvisionError(NetbootError):
    """The TFTP root could not be prepared."""


class InvalidConfig(NetbootError):
    """A configuration value violates a constraint; raised before any VM is spawned."""


class HarnessError(NetbootError):
    """The harness itself failed (spawn failure, indeterminate outcome)."""
