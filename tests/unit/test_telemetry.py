from decimal import Decimal

import pytest
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from holodeck.backtest.engine import BacktestEngine
from holodeck.core import telemetry
from holodeck.core.models import Signal


@pytest.fixture(scope="module")
def span_exporter():
    # The global tracer provider can only be set once per process
    exporter = InMemorySpanExporter()
    telemetry.install_tracing(exporter, batch=False)
    return exporter


class TestEngineSpans:
    def test_run_exports_nested_spans(self, span_exporter, make_config, make_source, scripted):
        span_exporter.clear()
        strategy = scripted({0: Signal.buy(suggested_quantity=Decimal("1"))})
        BacktestEngine(make_config(), strategy, make_source({"BTC-USDT": [100, 101]})).run()

        spans = span_exporter.get_finished_spans()
        names = {span.name for span in spans}
        assert {
            "backtest_run",
            "handle_market_event",
            "execute_signal",
            "fill_order",
            "calculate_total_cost",
        } <= names

        run_span = next(span for span in spans if span.name == "backtest_run")
        assert run_span.attributes["backtest.symbols"] == "BTC-USDT"
        assert run_span.attributes["backtest.total_fills"] == 2
        assert run_span.attributes["backtest.total_market_events"] == 2

        event_spans = [span for span in spans if span.name == "handle_market_event"]
        assert len(event_spans) == 2
        assert all(span.parent.span_id == run_span.context.span_id for span in event_spans)

    def test_resource_carries_service_name(self):
        resource = telemetry.build_resource("holodeck-test")
        assert resource.attributes[SERVICE_NAME] == "holodeck-test"


class TestSetupTelemetry:
    def test_otlp_exporter_per_signal(self, monkeypatch):
        installed = {}
        monkeypatch.setattr(
            telemetry, "install_tracing", lambda exporter, resource: installed.setdefault("traces", (exporter, resource))
        )
        monkeypatch.setattr(
            telemetry, "install_metrics", lambda exporter, resource: installed.setdefault("metrics", (exporter, resource))
        )
        monkeypatch.setattr(
            telemetry, "install_log_export", lambda exporter, resource: installed.setdefault("logs", (exporter, resource))
        )

        assert telemetry.setup_telemetry("holodeck-test", endpoint="http://collector:4318/") is True

        assert isinstance(installed["traces"][0], OTLPSpanExporter)
        assert isinstance(installed["metrics"][0], OTLPMetricExporter)
        assert isinstance(installed["logs"][0], OTLPLogExporter)
        assert installed["traces"][1].attributes[SERVICE_NAME] == "holodeck-test"


class TestConfigureLogging:
    def test_level_falls_back_to_settings(self, monkeypatch):
        calls = []
        monkeypatch.setattr(telemetry.logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
        monkeypatch.setattr(telemetry.settings, "LOG_LEVEL", "WARNING")

        telemetry.configure_logging("debug")
        telemetry.configure_logging()

        assert [c["level"] for c in calls] == ["DEBUG", "WARNING"]
        assert calls[0]["format"] == telemetry.LOG_FORMAT
