import asyncio
import json
from datetime import timedelta

import aiosmtplib
import httpx
import pytest

from casewatch.config import Settings, SweepKind, settings
from casewatch.core import ConfigurationException, SweepInProgressException
from casewatch.shared.infrastructure.grafana import GrafanaOTLPExporter
from casewatch.sla.application import EscalationService
from casewatch.sla.domain import new_report
from casewatch.sla.infrastructure import (
    CircuitBreaker,
    EmailNotifier,
    LogNotifier,
    SlackNotifier,
    SLAConfigManager,
    SLAScheduler,
    build_notifier,
)

from tests.conftest import T0, make_case


# ========== SLA config file ==========

def test_config_manager_loads_overrides(tmp_path):
    path = tmp_path / "sla_config.yaml"
    path.write_text("deadline_minutes:\n  P1: 30\nescalation_debounce_minutes: 20\n")

    manager = SLAConfigManager()
    config = manager.load(path)

    assert config.get_deadline("P1") == timedelta(minutes=30)
    assert config.get_deadline("P3") == timedelta(hours=24)
    assert manager.get_config().escalation_interval == timedelta(minutes=20)


def test_config_manager_missing_file_uses_defaults(tmp_path):
    manager = SLAConfigManager()
    config = manager.load(tmp_path / "absent.yaml")

    assert config.get_deadline("P2") == timedelta(hours=4)
    manager.start_watching()
    manager.stop_watching()


def test_config_manager_rejects_invalid_file(tmp_path):
    path = tmp_path / "sla_config.yaml"
    path.write_text("deadline_minutes:\n  P5: 10\n")

    with pytest.raises(ConfigurationException):
        SLAConfigManager().load(path)


def test_reload_keeps_previous_config_on_error(tmp_path):
    path = tmp_path / "sla_config.yaml"
    path.write_text("deadline_minutes:\n  P1: 45\n")
    manager = SLAConfigManager()
    manager.load(path)

    path.write_text("deadline_minutes: [not, a, mapping\n")
    assert manager.reload() is False
    assert manager.get_config().get_deadline("P1") == timedelta(minutes=45)

    path.write_text("deadline_minutes:\n  P1: 90\n")
    assert manager.reload() is True
    assert manager.get_config().get_deadline("P1") == timedelta(minutes=90)


def test_get_config_before_load():
    with pytest.raises(RuntimeError):
        SLAConfigManager().get_config()


# ========== Circuit breaker ==========

def test_circuit_breaker_opens_and_recovers():
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=3600)
    breaker.record_failure()
    assert breaker.allow_request()
    breaker.record_failure()
    assert not breaker.allow_request()

    breaker.recovery_timeout = 0
    assert breaker.state == "half_open"
    breaker.record_success()
    assert breaker.state == "closed"


# ========== Notifiers ==========

@pytest.mark.asyncio
async def test_log_notifier_accepts():
    assert await LogNotifier().notify_escalation(make_case(), 1) is True


@pytest.mark.asyncio
async def test_slack_notifier_posts_block_kit_message():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(200, text="ok")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = SlackNotifier(
        webhook_url="https://hooks.slack.test/T000/B000",
        channel="#soc",
        frontend_url="https://cases.example/",
        http_client=client
    )

    assert await notifier.notify_escalation(make_case("CASE-7"), 2)
    await notifier.close()

    body = requests[0]
    assert body["channel"] == "#soc"
    assert "level 2" in body["blocks"][0]["text"]["text"]
    assert "https://cases.example/cases/CASE-7" in body["blocks"][1]["fields"][0]["text"]


@pytest.mark.asyncio
async def test_slack_notifier_makes_one_attempt_per_dispatch():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    notifier = SlackNotifier(
        webhook_url="https://hooks.slack.test/T000/B000",
        channel="#soc",
        frontend_url="https://cases.example",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )

    assert await notifier.notify_escalation(make_case(), 1) is False
    assert len(calls) == 1
    await notifier.close()


@pytest.mark.asyncio
async def test_slack_notifier_opens_circuit_after_repeated_failures():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    notifier = SlackNotifier(
        webhook_url="https://hooks.slack.test/T000/B000",
        channel="#soc",
        frontend_url="https://cases.example",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )

    for _ in range(6):
        assert await notifier.notify_escalation(make_case(), 1) is False
    assert len(calls) == 5
    await notifier.close()


def test_overdue_hours_measured_at_escalation_time():
    # P1 due at T0+1h, escalated at T0+4h
    case = make_case("CASE-9", priority="P1", escalation_level=1, last_escalated_at=T0 + timedelta(hours=4))
    notifier = SlackNotifier(webhook_url=None, channel="#soc", frontend_url="https://cases.example")

    fields = notifier._build_message(case, 1)["blocks"][1]["fields"]

    assert fields[5]["text"] == "*Overdue By:*\n3h"
    assert "overdue by 3 hours" in _email_notifier()._build_message(case, 1).get_content()


@pytest.mark.asyncio
async def test_slack_notifier_without_webhook():
    notifier = SlackNotifier(webhook_url=None, channel="#soc", frontend_url="https://cases.example")
    assert await notifier.notify_escalation(make_case(), 1) is False


def _email_notifier(**overrides):
    params = dict(
        host="smtp.example",
        port=587,
        username="alerts@example",
        password="secret",
        sender="alerts@example",
        recipients=["lead@example", "admin@example"],
        frontend_url="https://cases.example"
    )
    params.update(overrides)
    return EmailNotifier(**params)


@pytest.mark.asyncio
async def test_email_notifier_sends_to_senior_analysts(monkeypatch):
    sent = []

    async def fake_send(message, **kwargs):
        sent.append((message, kwargs))

    monkeypatch.setattr(aiosmtplib, "send", fake_send)

    assert await _email_notifier().notify_escalation(make_case("CASE-3", title="Malware beacon"), 1)

    message, kwargs = sent[0]
    assert message["Subject"] == "SLA ESCALATION: CASE-3 - Overdue Case Requires Attention"
    assert message["To"] == "lead@example, admin@example"
    assert "Malware beacon" in message.get_content()
    assert kwargs["start_tls"] is True
    assert kwargs["use_tls"] is False


@pytest.mark.asyncio
async def test_email_notifier_smtp_error(monkeypatch):
    async def failing_send(message, **kwargs):
        raise aiosmtplib.SMTPException("connection refused")

    monkeypatch.setattr(aiosmtplib, "send", failing_send)

    assert await _email_notifier().notify_escalation(make_case(), 1) is False


@pytest.mark.asyncio
async def test_email_notifier_unconfigured():
    assert await _email_notifier(recipients=[]).notify_escalation(make_case(), 1) is False


def test_build_notifier_selects_backend():
    assert isinstance(build_notifier(Settings(notifier_backend="log")), LogNotifier)
    assert isinstance(build_notifier(Settings(notifier_backend="slack")), SlackNotifier)
    assert isinstance(build_notifier(Settings(notifier_backend="email")), EmailNotifier)


def test_unknown_notifier_backend_is_rejected():
    with pytest.raises(ValueError):
        Settings(notifier_backend="pager")


# ========== Metrics ==========

@pytest.mark.asyncio
async def test_grafana_exporter_pushes_sweep_gauges():
    payloads = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append((str(request.url), json.loads(request.content)))
        return httpx.Response(200)

    exporter = GrafanaOTLPExporter(
        host="https://otlp.grafana.test",
        api_key="key",
        instance_id="123",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    report = new_report(SweepKind.OVERDUE_ESCALATION, T0)
    report.cases_scanned = 4
    report.escalated = 2
    report.finished_at = T0 + timedelta(milliseconds=250)

    assert await exporter.export_sweep_metrics(report)

    url, payload = payloads[0]
    assert url == "https://otlp.grafana.test/otlp/v1/metrics"
    metrics = payload["resourceMetrics"][0]["scopeMetrics"][0]["metrics"]
    values = {m["name"]: m["gauge"]["dataPoints"][0]["asInt"] for m in metrics}
    assert values == {
        "sla_sweep_cases_scanned": 4,
        "sla_sweep_escalations": 2,
        "sla_sweep_failures": 0,
        "sla_sweep_duration_ms": 250,
    }


@pytest.mark.asyncio
async def test_grafana_exporter_disabled_without_credentials(monkeypatch):
    monkeypatch.setattr(settings, "grafana_host", None)
    exporter = GrafanaOTLPExporter(host="", api_key="", instance_id="")

    assert not exporter.is_enabled()
    assert await exporter.export_sweep_metrics(new_report(SweepKind.SLA_MONITORING, T0)) is False


# ========== Scheduler ==========

@pytest.fixture
def escalation_service(store, notifier, config_provider, clock):
    return EscalationService(store, notifier, config_provider, clock=clock)


@pytest.mark.asyncio
async def test_scheduler_registers_enabled_jobs_only(escalation_service):
    scheduler = SLAScheduler(
        escalation_service,
        intervals={SweepKind.SLA_MONITORING: 300, SweepKind.OVERDUE_ESCALATION: 0}
    )
    await scheduler.start()
    try:
        status = scheduler.status()
    finally:
        await scheduler.stop()

    assert status["running"] is True
    monitoring = status["jobs"][SweepKind.SLA_MONITORING]
    assert monitoring["scheduled"] is True
    assert monitoring["interval_seconds"] == 300
    assert monitoring["next_run_at"] is not None
    escalation = status["jobs"][SweepKind.OVERDUE_ESCALATION]
    assert escalation["scheduled"] is False
    assert escalation["interval_seconds"] == 0
    assert not scheduler.is_running


@pytest.mark.asyncio
async def test_run_job_now_records_last_report(escalation_service, store, notifier, clock):
    store.add(make_case("CASE-1", priority="P1"))
    clock.set(T0 + timedelta(hours=2))
    scheduler = SLAScheduler(escalation_service, intervals={SweepKind.OVERDUE_ESCALATION: 900})

    report = await scheduler.run_job_now(SweepKind.OVERDUE_ESCALATION)

    assert report.escalated == 1
    assert scheduler.status()["jobs"][SweepKind.OVERDUE_ESCALATION]["last_report"] is report
    assert notifier.sent == [("CASE-1", 1)]


@pytest.mark.asyncio
async def test_scheduled_tick_is_skipped_while_same_sweep_runs(escalation_service, store, notifier, clock):
    store.add(make_case("CASE-1", priority="P1"))
    notifier.hang_for.add("CASE-1")
    clock.set(T0 + timedelta(hours=2))
    scheduler = SLAScheduler(escalation_service, intervals={SweepKind.OVERDUE_ESCALATION: 900})

    running = asyncio.create_task(escalation_service.run_escalation_sweep())
    while not escalation_service.active_sweeps:
        await asyncio.sleep(0)

    # Tick does not raise and does not queue
    await scheduler._run_job(SweepKind.OVERDUE_ESCALATION)
    assert SweepKind.OVERDUE_ESCALATION not in escalation_service.last_reports

    with pytest.raises(SweepInProgressException):
        await scheduler.run_job_now(SweepKind.OVERDUE_ESCALATION)

    # The other cadence is not blocked
    report = await scheduler.run_job_now(SweepKind.SLA_MONITORING)
    assert report.cases_scanned == 1

    running.cancel()
    with pytest.raises(asyncio.CancelledError):
        await running


@pytest.mark.asyncio
async def test_both_cadences_fire_on_shared_ticks(escalation_service, store, notifier, clock):
    store.add(make_case("CASE-1", priority="P1"))
    store.read_delay = 0.05
    clock.set(T0 + timedelta(hours=2))
    scheduler = SLAScheduler(
        escalation_service,
        intervals={SweepKind.SLA_MONITORING: 1, SweepKind.OVERDUE_ESCALATION: 3}
    )

    await scheduler.start()
    try:
        await asyncio.sleep(3.6)
    finally:
        await scheduler.stop()

    assert SweepKind.SLA_MONITORING in escalation_service.last_reports
    assert escalation_service.last_reports[SweepKind.OVERDUE_ESCALATION].escalated == 1
    assert notifier.sent == [("CASE-1", 1)]
