"""Standardised API error responses.

Usage
-----
    from approvals.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Workflow not found")
    return api_error(E.VALIDATION_REQUIRED, "entity_id is required")
    return api_error(E.ALREADY_DECIDED, "Approver already decided", details={...})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • workflow state codes are passed through unprefixed
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"
    CONFIGURATION = "ERR_CONFIGURATION"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Workflow signal conflicts – HTTP 409
    ILLEGAL_STATE = "ILLEGAL_STATE"
    ALREADY_DECIDED = "ALREADY_DECIDED"
    TASK_ALREADY_RESOLVED = "TASK_ALREADY_RESOLVED"
    TASK_NOT_ACTIONABLE = "TASK_NOT_ACTIONABLE"
    NOT_AN_APPROVER = "NOT_AN_APPROVER"

    # Server – HTTP 500 / 503
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"
    UPSTREAM = "ERR_UPSTREAM"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.CONFIGURATION: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.ILLEGAL_STATE: 409,
    E.ALREADY_DECIDED: 409,
    E.TASK_ALREADY_RESOLVED: 409,
    E.TASK_NOT_ACTIONABLE: 409,
    E.NOT_AN_APPROVER: 403,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.UPSTREAM: 503,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, task ids, …).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
