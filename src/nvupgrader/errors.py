"""Domain errors for nvupgrader."""


class UpgraderError(RuntimeError):
    """Raised when the upgrade cannot continue safely."""


class PreconditionFailure(UpgraderError):
    """A required capability, privilege or platform is missing."""


class InvalidVersionFormat(UpgraderError):
    """A version string is not a dotted list of non-negative integers."""


class VersionResolutionFailed(UpgraderError):
    """No version source produced a usable driver version."""


class DownloadFailed(UpgraderError):
    """The installer artifact could not be fetched or validated."""


class InstallFailed(UpgraderError):
    """The installer could not be transferred or exited with an error."""

    def __init__(self, target_id: str, message: str):
        super().__init__(message)
        self.target_id = target_id


class VersionMismatch(UpgraderError):
    """The version reported after install differs from the requested one."""

    def __init__(self, target_id: str, expected: str, actual: str, message: str):
        super().__init__(message)
        self.target_id = target_id
        self.expected = expected
        self.actual = actual


class DiscoveryWarning(UserWarning):
    """Target discovery found nothing; the run continues host-only."""
