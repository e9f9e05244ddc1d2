from typing import Any, Dict, Optional


class ConverterError(Exception):
    """Base for every error the service reports to callers as JSON."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "type": type(self).__name__}


class InvalidRequest(ConverterError):
    status_code = 400


class ConfigurationMissing(ConverterError):
    status_code = 500


class AgentUnavailable(ConverterError):
    status_code = 500


class DisallowedStatement(ConverterError):
    status_code = 400


class RequestCancelled(ConverterError):
    # nginx convention for "client closed request"
    status_code = 499


class ExecutionFailed(ConverterError):
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None,
                 details: Optional[str] = None, hint: Optional[str] = None,
                 sql: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.details = details
        self.hint = hint
        self.sql = sql

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out.update({"message": self.message, "code": self.code,
                    "details": self.details, "hint": self.hint})
        if self.sql:
            out["sql"] = self.sql
        return out
