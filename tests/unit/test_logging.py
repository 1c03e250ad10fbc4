"""
Tests for the shared logging processors and request context.
"""

import structlog

from shared.logging import clear_context, service_context, set_request_id, set_user_context


class TestServiceContext:

    def test_component_loggers_carry_the_process_service(self):
        add_service = service_context("list-service")

        for component in ("reconciler", "broker", "registry", "store.lists", "circuit_breaker.item-service"):
            event = add_service(None, "info", {"event": "x", "logger": component})
            assert event["service"] == "list-service"
            assert event["logger"] == component

    def test_explicit_service_field_wins(self):
        event = service_context("gateway")(None, "info", {"event": "x", "service": "item-service"})
        assert event["service"] == "item-service"


class TestRequestContext:

    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_request_and_user_ids_are_bound(self):
        request_id = set_request_id("req-1")
        set_user_context("u1")

        assert request_id == "req-1"
        assert structlog.contextvars.get_contextvars() == {"request_id": "req-1", "user_id": "u1"}

    def test_request_id_generated_when_missing(self):
        request_id = set_request_id()
        assert request_id
        assert structlog.contextvars.get_contextvars()["request_id"] == request_id

    def test_clear(self):
        set_request_id("req-1")
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}
