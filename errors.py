from typing import Optional


class LcrError(Exception):
    """Base class for every error raised by the local container registry environment."""


class ConfigError(LcrError):
    pass


class CommandError(LcrError):
    def __init__(self, cmd: str, returncode: int, out: str = "", err: str = "") -> None:
        self.cmd = cmd
        self.returncode = returncode
        self.out = out
        self.err = err
        detail = (err or out).strip()
        if len(detail) > 400:
            detail = f"{detail[:397]}..."
        super().__init__(f"{cmd!r} failed with returncode {returncode}: {detail}")


class LockTimeout(LcrError):
    pass


class MaxRetriesReached(LcrError):
    pass


class PreconditionMissing(LcrError):
    pass


class ResourceProvisioningFailed(LcrError):
    def __init__(self, stage: str, cause: Optional[BaseException] = None) -> None:
        self.stage = stage
        msg = f"provisioning stage '{stage}' failed"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class TunnelNotReady(LcrError):
    pass


class NodeTrustError(LcrError):
    def __init__(self, node: str, reason: str, outcomes: Optional[list] = None) -> None:  # type: ignore[type-arg]
        self.node = node
        self.reason = reason
        # NodeOutcome entries gathered up to and including the failing node.
        self.outcomes = outcomes or []
        super().__init__(f"node {node}: {reason}")


class NodeConfigurationFailed(NodeTrustError):
    pass


class NodeVerificationFailed(NodeTrustError):
    pass


class ImageProcessingError(LcrError):
    pass


class SetupError(LcrError):
    """Single error surfaced to setup callers; names the stage that failed."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"setup failed at stage '{stage}': {cause}")


class BestEffortCleanupWarning(UserWarning):
    """Teardown-only; logged, never raised to the caller."""
