class FileHostError(Exception):
    status_code = 500
    message = "Internal error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)

    @property
    def detail(self) -> str:
        return str(self)


class ClientInputError(FileHostError):
    status_code = 400


class TooManyFiles(ClientInputError):
    def __init__(self, limit: int):
        super().__init__(
            f"The amount of uploaded files exceeds the limit of {limit} files at a time."
        )


class RequestTooLarge(ClientInputError):
    def __init__(self, limit_bytes: int):
        super().__init__(
            f"The uploaded file(s) exceed the file size limit of {limit_bytes // (1024 * 1024)} MB."
        )


class FileNotFoundOrExpired(ClientInputError):
    status_code = 404
    message = "File not found. The specified file ID is invalid or the file has expired."


class NotAnArchive(ClientInputError):
    message = "Not a JAR file"


class RateLimitExceeded(FileHostError):
    status_code = 400

    def __init__(self, limit_bytes: int, remaining_bytes: int, wait_minutes: int):
        self.remaining_bytes = remaining_bytes
        self.wait_minutes = wait_minutes
        super().__init__(
            f"You have reached the upload limit ({limit_bytes // (1024 * 1024)} MB per hour). "
            f"Please upload a smaller file (up to {remaining_bytes:,} bytes) "
            f"or wait {wait_minutes} minutes."
        )


class DependencyUnavailable(FileHostError):
    status_code = 500


class DescriptorToolUnavailable(DependencyUnavailable):
    def __init__(self, tool: str = "jadmaker"):
        self.tool = tool
        super().__init__(
            f"Failed to run '{tool}'. This instance probably does not have the '{tool}' "
            "command installed, which is required for downloading JAD files."
        )
