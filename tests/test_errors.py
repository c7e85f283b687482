"""
Tests for application errors, their HTTP mapping and the ambient helpers
(environment config parsing, logging setup).
"""

from __future__ import annotations

import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError

from mssp import config
from mssp.errors import (
    AppError, AuthorizationError, BusinessLogicError, DuplicateError, ExternalServiceError, NotFoundError,
    OperationTimeoutError, ValidationError, is_operational_error, register_exception_handlers,
)
from shared.logging_config import LIBRARY_LOGGERS, resolve_level, setup_logging


class TestErrorTypes:
    @pytest.mark.parametrize("error, status, code", [
        (ValidationError("bad"), 400, "VALIDATION_ERROR"),
        (AuthorizationError(), 403, "AUTHORIZATION_ERROR"),
        (NotFoundError("Client", 3), 404, "NOT_FOUND"),
        (DuplicateError("dup"), 409, "DUPLICATE_ERROR"),
        (BusinessLogicError("no overlap"), 422, "BUSINESS_LOGIC_ERROR"),
        (ExternalServiceError("jira", "down"), 502, "EXTERNAL_SERVICE_ERROR"),
        (OperationTimeoutError("slow"), 504, "TIMEOUT_ERROR"),
    ])
    def test_status_and_code(self, error, status, code) -> None:
        assert error.status_code == status
        assert error.code == code

    def test_messages_and_details(self) -> None:
        assert NotFoundError("Client", 3).message == "Client with ID 3 not found"
        assert NotFoundError("Plugin 'x'").message == "Plugin 'x' not found"
        assert BusinessLogicError("no overlap").message == "Business rule violation: no overlap"

        forbidden = AuthorizationError(required_role="admin", current_role="user")
        assert forbidden.to_dict() == {
            "error": "AUTHORIZATION_ERROR",
            "message": "Insufficient permissions",
            "details": {"requiredRole": "admin", "currentRole": "user"},
        }
        assert ExternalServiceError("jira", "down").details == {"service": "jira"}

    def test_operational_flag(self) -> None:
        assert is_operational_error(ValidationError("x"))
        assert not is_operational_error(AppError("bug", is_operational=False))
        assert not is_operational_error(RuntimeError("boom"))


@pytest.fixture
def error_app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/missing")
    def missing():
        raise NotFoundError("Contract", 9)

    @app.get("/upstream")
    def upstream():
        raise ExternalServiceError("jira", "unreachable")

    @app.get("/conflict")
    def conflict():
        raise IntegrityError("INSERT ...", {}, Exception("UNIQUE constraint failed"))

    @app.get("/bug")
    def bug():
        raise AppError("invariant broken", is_operational=False)

    return TestClient(app)


class TestExceptionHandlers:
    def test_app_error_to_json(self, error_app) -> None:
        resp = error_app.get("/missing")
        assert resp.status_code == 404
        assert resp.json() == {
            "error": "NOT_FOUND",
            "message": "Contract with ID 9 not found",
            "details": {"resource": "Contract"},
        }

    def test_upstream_error(self, error_app) -> None:
        resp = error_app.get("/upstream")
        assert resp.status_code == 502
        assert resp.json()["message"] == "jira: unreachable"

    def test_integrity_error_is_conflict(self, error_app) -> None:
        resp = error_app.get("/conflict")
        assert resp.status_code == 409
        assert resp.json()["error"] == "DUPLICATE_ERROR"

    def test_programming_error_logged_with_traceback(self, error_app, caplog) -> None:
        with caplog.at_level(logging.ERROR, logger="mssp.errors"):
            resp = error_app.get("/bug")
        assert resp.status_code == 500
        assert resp.json() == {"error": "INTERNAL_ERROR", "message": "invariant broken"}
        record = next(r for r in caplog.records if "invariant broken" in r.getMessage())
        assert record.exc_info is not None


class TestServiceErrorBodies:
    def test_not_found_from_service(self, client, basic_user, auth_headers) -> None:
        resp = client.get("/api/contracts/4242/metrics", headers=auth_headers(basic_user))
        assert resp.status_code == 404
        assert resp.json()["error"] == "NOT_FOUND"
        assert resp.json()["message"] == "Contract with ID 4242 not found"

    def test_unknown_plugin(self, client, basic_user, auth_headers) -> None:
        resp = client.post("/api/plugins/nope/instances/x/query", json={"query": "q"},
                           headers=auth_headers(basic_user))
        assert resp.status_code == 404
        assert resp.json()["error"] == "NOT_FOUND"

    def test_bad_token_body(self, client) -> None:
        resp = client.get("/api/dashboard/stats", headers={"Authorization": "Bearer x.y.z"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "AUTHENTICATION_ERROR"


class TestConfigHelpers:
    def test_int_env(self, monkeypatch) -> None:
        monkeypatch.setenv("MSSP_TEST_INT", " 42 ")
        assert config._int_env("MSSP_TEST_INT", 1) == 42
        monkeypatch.setenv("MSSP_TEST_INT", "forty")
        assert config._int_env("MSSP_TEST_INT", 1) == 1
        monkeypatch.delenv("MSSP_TEST_INT")
        assert config._int_env("MSSP_TEST_INT", 7) == 7

    def test_str_env(self, monkeypatch) -> None:
        monkeypatch.setenv("MSSP_TEST_STR", "  value ")
        assert config._str_env("MSSP_TEST_STR", "x") == "value"


class TestLogging:
    @pytest.mark.parametrize("level, expected", [
        ("debug", logging.DEBUG),
        ("WARNING", logging.WARNING),
        (logging.ERROR, logging.ERROR),
        ("chatty", logging.INFO),
    ])
    def test_resolve_level(self, level, expected) -> None:
        assert resolve_level(level) == expected

    def test_log_file_handler(self, tmp_path) -> None:
        log_file = tmp_path / "logs" / "mssp.log"
        root = logging.getLogger()
        before = list(root.handlers)
        try:
            logger = setup_logging("scheduler", level="info", log_file=str(log_file))
            logger.info("tick complete")
            for handler in root.handlers:
                handler.flush()
        finally:
            logging.getLogger("scheduler").setLevel(logging.NOTSET)
            for handler in list(root.handlers):
                if handler not in before:
                    handler.close()
                    root.removeHandler(handler)

        contents = log_file.read_text()
        assert "[SCHEDULER] INFO - tick complete" in contents

    def test_repeated_setup_keeps_one_file_handler(self, tmp_path) -> None:
        log_file = tmp_path / "mssp.log"
        root = logging.getLogger()
        before = list(root.handlers)
        try:
            setup_logging("mssp", log_file=str(log_file))
            setup_logging("mssp", log_file=str(log_file))
            added = [h for h in root.handlers if h not in before]
            assert len(added) == 1
        finally:
            logging.getLogger("mssp").setLevel(logging.NOTSET)
            for handler in list(root.handlers):
                if handler not in before:
                    handler.close()
                    root.removeHandler(handler)

    @pytest.mark.parametrize("level, library_level", [
        ("info", logging.WARNING),
        ("debug", logging.DEBUG),
    ])
    def test_library_loggers_follow_debug(self, level, library_level) -> None:
        try:
            setup_logging("mssp", level=level)
            for name in LIBRARY_LOGGERS:
                assert logging.getLogger(name).level == library_level
        finally:
            for name in ("mssp", *LIBRARY_LOGGERS):
                logging.getLogger(name).setLevel(logging.NOTSET)
