from __future__ import annotations

from .request_id import RequestIdMiddleware, principal_ctx_var, request_id_ctx_var
from .security_headers import ApiHeadersMiddleware

__all__ = [
    "RequestIdMiddleware",
    "ApiHeadersMiddleware",
    "request_id_ctx_var",
    "principal_ctx_var",
]
