class RemoteOptimizerError(Exception):
    """Base exception for the remote optimizer orchestrator."""

    pass


class ConfigurationError(RemoteOptimizerError):
    """Raised when a required setting (API token, SSH key) is not configured."""

    pass


class ProvisioningError(RemoteOptimizerError):
    """Raised when the cloud control-plane API returns an unexpected response."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class SshConnectivityError(RemoteOptimizerError):
    """Raised when an SSH session cannot be established or authenticated."""

    pass


class RemoteCommandError(RemoteOptimizerError):
    """Raised when a remote command exits non-zero or is never acknowledged."""

    def __init__(
        self,
        message: str,
        command: str = "",
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)


class LocalArtifactError(RemoteOptimizerError):
    """Raised when a local source (engine dir, data snapshot, certificate) is missing."""

    pass


class KeyFormatError(RemoteOptimizerError):
    """Raised when SSH key material cannot be encoded or decoded."""

    pass


class JobNotFoundError(RemoteOptimizerError):
    """Raised when a remote optimization job does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Remote optimization job {job_id} was not found.")


class JobStateError(RemoteOptimizerError):
    """Raised when an operation is not valid for the job's current status."""

    pass
