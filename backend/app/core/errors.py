from __future__ import annotations

from typing import Any

from fastapi import HTTPException


class WorkflowError(Exception):
    """
    工作流引擎统一错误基类。

    中文注释:
    - 服务层只抛出这些“带类型”的错误，不直接构造 HTTP 响应；
    - 控制器层通过 to_http_exception() 映射为 FastAPI 的 HTTPException。
    """

    code = "workflow_error"
    status_code = 400

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": False, "code": self.code, "error": self.message}
        if self.context:
            out["context"] = dict(self.context)
        return out

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_dict())


class NotFound(WorkflowError):
    code = "not_found"
    status_code = 404


class Forbidden(WorkflowError):
    code = "forbidden"
    status_code = 403


class InvalidState(WorkflowError):
    code = "invalid_state"
    status_code = 409


class NotEligibleForRevision(InvalidState):
    code = "not_eligible_for_revision"


class DuplicateAssignment(WorkflowError):
    code = "duplicate_assignment"
    status_code = 409


class AlreadyProcessed(WorkflowError):
    code = "already_processed"
    status_code = 409


class InvalidSignature(WorkflowError):
    code = "invalid_signature"
    status_code = 400


class GatewayUnavailable(WorkflowError):
    code = "gateway_unavailable"
    status_code = 503


class ValidationFailed(WorkflowError):
    code = "validation_failed"
    status_code = 422


class NotAReviewer(ValidationFailed):
    code = "not_a_reviewer"
    status_code = 400


class OperationFailed(WorkflowError):
    code = "operation_failed"
    status_code = 500
