from typing import Optional


class ProvisioningError(RuntimeError):
    pass


class UnsupportedPlatformError(ProvisioningError):
    pass


class NotFoundError(ProvisioningError):
    pass


class VersionTooLowError(ProvisioningError):
    pass


class DownloadFailedError(ProvisioningError):
    def __init__(self, message: str, last_error: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class DownloadStalledError(DownloadFailedError):
    pass


class InstallFailedError(ProvisioningError):
    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.reason = reason


class CommandLaunchError(ProvisioningError):
    pass


class CommandTimeoutError(ProvisioningError):
    pass


class ConfigWriteFailedError(ProvisioningError):
    pass


class PrivilegeEscalationCancelledError(ProvisioningError):
    pass


class InvalidConfigurationError(ProvisioningError):
    pass


class ProvisioningCancelledError(ProvisioningError):
    pass
