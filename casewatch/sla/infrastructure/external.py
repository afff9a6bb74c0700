"""
SLA External Service Integrations
==================================

External services for SLA tracking and escalation:
- YAML policy file watcher (hot reload)
- Escalation notifiers (Slack webhook, SMTP email, log-only)
- APScheduler for the periodic sweeps
"""

import threading
import time
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosmtplib
import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from casewatch.config import Settings, SweepKind, settings as default_settings
from casewatch.core import ConfigurationException, SweepInProgressException
from casewatch.shared.infrastructure.logging import get_logger
from casewatch.sla.application import EscalationService, INotifier, ISLAConfigProvider
from casewatch.sla.domain import Case, SLAConfig, SweepReport

logger = get_logger(__name__)


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for SLA policy file changes."""

    def __init__(self, config_manager: "SLAConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info("SLA config file changed", extra={"path": str(event.src_path)})
            self.config_manager.reload()


class SLAConfigManager(ISLAConfigProvider):
    """
    Thread-safe SLA policy manager with hot-reload support.

    Uses watchdog to monitor file changes and reload the policy
    without restarting the service. A reload that fails validation
    keeps the previous policy.
    """

    def __init__(self):
        self._config: Optional[SLAConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> SLAConfig:
        """
        Initial configuration load.

        Raises:
            ConfigurationException: the file exists but is not a valid policy
        """
        self._path = Path(path)
        try:
            self._config = self._load_from_file(self._path)
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigurationException(
                f"Invalid SLA config file: {self._path}", {"error": str(e)}
            ) from e
        return self._config

    def _load_from_file(self, path: Path) -> SLAConfig:
        """Load and parse YAML config file."""
        if not path.exists():
            logger.warning("SLA config file not found, using defaults", extra={"path": str(path)})
            return SLAConfig()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return SLAConfig(**data)

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except (OSError, yaml.YAMLError, ValueError) as e:
            logger.error("Failed to reload SLA config, keeping previous", extra={"error": str(e)})
            return False

        with self._lock:
            self._config = new_config
        logger.info("SLA configuration reloaded successfully")
        return True

    def start_watching(self) -> None:
        """
        Start watching the policy file for changes.

        Skips watching if the file doesn't exist or inotify is unavailable
        (e.g. some container runtimes).
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "Config file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info("Started watching config file", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static config", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_config(self) -> SLAConfig:
        """Get current configuration."""
        with self._lock:
            if self._config is None:
                raise RuntimeError("SLA configuration not loaded")
            return self._config


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        """Check if request should be allowed."""
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        """Record successful request."""
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        """Record failed request."""
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


def _overdue_hours(case: Case) -> int:
    # Measured at the escalating sweep's timestamp
    reference = case.last_escalated_at or case.due_at
    return max(0, round((reference - case.due_at).total_seconds() / 3600))


class SlackNotifier(INotifier):
    """
    Slack webhook notifier with circuit breaker.

    Handles sending escalation alerts to Slack with:
    - Circuit breaker to prevent cascade failures
    - Timeout handling

    Each dispatch makes a single attempt; a failed alert is reported to the
    sweep and not retried.
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        channel: str,
        frontend_url: str,
        timeout_seconds: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self._webhook_url = webhook_url
        self._channel = channel
        self._frontend_url = frontend_url.rstrip("/")
        self._timeout = timeout_seconds
        self._circuit_breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def _build_message(self, case: Case, escalation_level: int) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        case_url = f"{self._frontend_url}/cases/{case.id}"

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"🚨 SLA Escalation (level {escalation_level})",
                    "emoji": True
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Case:*\n<{case_url}|{case.id}>"},
                    {"type": "mrkdwn", "text": f"*Priority:*\n{case.priority}"},
                    {"type": "mrkdwn", "text": f"*Status:*\n{case.status}"},
                    {"type": "mrkdwn", "text": f"*Escalation Level:*\n{escalation_level}"},
                    {"type": "mrkdwn", "text": f"*Assigned To:*\n{case.assigned_to or 'Unassigned'}"},
                    {"type": "mrkdwn", "text": f"*Overdue By:*\n{_overdue_hours(case)}h"}
                ]
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": f"Due: {case.due_at.isoformat()} | Created: {case.created_at.isoformat()}"
                    }
                ]
            }
        ]

        return {"channel": self._channel, "blocks": blocks}

    async def notify_escalation(self, case: Case, escalation_level: int) -> bool:
        """
        Send escalation alert to the Slack webhook.

        Returns:
            True if sent successfully, False otherwise
        """
        if not self._webhook_url:
            logger.debug("Slack webhook URL not configured, skipping notification")
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping Slack notification",
                extra={"case_id": case.id}
            )
            return False

        message = self._build_message(case, escalation_level)

        try:
            client = await self._get_client()
            response = await client.post(self._webhook_url, json=message)
        except httpx.HTTPError as e:
            self._circuit_breaker.record_failure()
            logger.error(
                "Slack notification failed",
                extra={"error": str(e), "case_id": case.id}
            )
            return False

        if response.status_code != 200:
            self._circuit_breaker.record_failure()
            logger.warning(
                "Slack webhook returned non-200",
                extra={"status_code": response.status_code, "case_id": case.id}
            )
            return False

        self._circuit_breaker.record_success()
        logger.info(
            "Slack escalation sent",
            extra={"case_id": case.id, "escalation_level": escalation_level}
        )
        return True

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class EmailNotifier(INotifier):
    """Sends escalation alerts to senior analysts over SMTP."""

    def __init__(
        self,
        host: Optional[str],
        port: int,
        username: Optional[str],
        password: Optional[str],
        sender: Optional[str],
        recipients: List[str],
        frontend_url: str,
        use_tls: bool = True
    ):
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._sender = sender or username
        self._recipients = list(recipients)
        self._frontend_url = frontend_url.rstrip("/")
        self._use_tls = use_tls

    @property
    def is_configured(self) -> bool:
        return bool(self._host and self._sender and self._recipients)

    def _build_message(self, case: Case, escalation_level: int) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self._sender
        msg["To"] = ", ".join(self._recipients)
        msg["Subject"] = f"SLA ESCALATION: {case.id} - Overdue Case Requires Attention"
        msg.set_content(
            f"Case {case.id} is overdue by {_overdue_hours(case)} hours and requires "
            f"immediate attention.\n\n"
            f"Title: {case.title or '-'}\n"
            f"Priority: {case.priority}\n"
            f"Current Status: {case.status}\n"
            f"Assigned To: {case.assigned_to or 'Unassigned'}\n"
            f"Due Date: {case.due_at.isoformat()}\n"
            f"Escalation Level: {escalation_level}\n\n"
            f"Review: {self._frontend_url}/cases/{case.id}\n"
        )
        return msg

    async def notify_escalation(self, case: Case, escalation_level: int) -> bool:
        if not self.is_configured:
            logger.warning("Email service not configured, skipping escalation email")
            return False

        # STARTTLS on 587, implicit TLS on 465
        start_tls = self._use_tls and self._port != 465
        use_tls = self._use_tls and self._port == 465
        try:
            await aiosmtplib.send(
                self._build_message(case, escalation_level),
                hostname=self._host,
                port=self._port,
                username=self._username,
                password=self._password,
                start_tls=start_tls,
                use_tls=use_tls,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error("Failed to send escalation email", extra={"case_id": case.id, "error": str(e)})
            return False

        logger.info(
            "Escalation email sent",
            extra={"case_id": case.id, "escalation_level": escalation_level, "recipients": len(self._recipients)}
        )
        return True


class LogNotifier(INotifier):
    """Writes escalations to the log only; used when no channel is configured."""

    async def notify_escalation(self, case: Case, escalation_level: int) -> bool:
        logger.warning(
            "SLA escalation",
            extra={
                "case_id": case.id,
                "priority": case.priority,
                "escalation_level": escalation_level,
                "assigned_to": case.assigned_to
            }
        )
        return True


def build_notifier(config: Optional[Settings] = None) -> INotifier:
    """Create the notifier selected by `notifier_backend`."""
    config = config or default_settings
    if config.notifier_backend == "slack":
        return SlackNotifier(
            webhook_url=config.slack_webhook_url,
            channel=config.slack_channel,
            frontend_url=config.frontend_url,
            timeout_seconds=config.slack_timeout_seconds
        )
    if config.notifier_backend == "email":
        return EmailNotifier(
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_user,
            password=config.smtp_password,
            sender=config.smtp_from,
            recipients=config.escalation_recipients,
            frontend_url=config.frontend_url,
            use_tls=config.smtp_tls
        )
    return LogNotifier()


class SLAScheduler:
    """
    Wrapper for APScheduler running the SLA sweeps.

    One interval job per sweep kind; an interval of 0 disables that job.
    Manages the lifecycle of the scheduler and jobs.
    """

    def __init__(
        self,
        escalation_service: EscalationService,
        intervals: Dict[str, int],
        timezone: str = "UTC"
    ):
        self._service = escalation_service
        self.intervals = {kind: seconds for kind, seconds in intervals.items() if seconds > 0}
        self._timezone = timezone
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self) -> None:
        """Start the scheduler with one job per enabled sweep."""
        if self._running:
            logger.warning("SLA scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=self._timezone)

        for kind, seconds in self.intervals.items():
            self._scheduler.add_job(
                self._run_job,
                "interval",
                seconds=seconds,
                args=[kind],
                id=kind,
                name=f"{kind} sweep",
                misfire_grace_time=60,
                max_instances=1,
                coalesce=True,
                replace_existing=True
            )

        self._scheduler.start()
        self._running = True

        logger.info("SLA scheduler started", extra={"intervals": self.intervals})

    async def _run_job(self, kind: str) -> None:
        """Scheduled tick; an overlapping tick is skipped, never queued."""
        try:
            await self._service.run_sweep(kind)
        except SweepInProgressException:
            logger.warning(
                "Sweep tick skipped",
                extra={"sweep": kind}
            )
        except Exception:  # noqa: BLE001 - keep the scheduler alive for the next tick
            logger.exception("SLA sweep job failed", extra={"sweep": kind})

    async def run_job_now(self, kind: str) -> SweepReport:
        """
        Run one sweep immediately, outside the schedule.

        Raises:
            SweepInProgressException: a sweep of this kind is running
        """
        report = await self._service.run_sweep(kind)
        logger.info("Manually executed sweep", extra={"sweep": kind})
        return report

    async def stop(self) -> None:
        """Stop scheduling new ticks, then wait for in-flight sweeps to finish."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        await self._service.wait_idle()
        self._running = False
        logger.info("SLA scheduler stopped")

    def status(self) -> Dict[str, Any]:
        """Snapshot of jobs, next run times and last reports."""
        jobs = {}
        for kind in (SweepKind.SLA_MONITORING, SweepKind.OVERDUE_ESCALATION):
            job = self._scheduler.get_job(kind) if self._scheduler and self._running else None
            jobs[kind] = {
                "interval_seconds": self.intervals.get(kind, 0),
                "scheduled": job is not None,
                "next_run_at": job.next_run_time if job else None,
                "last_report": self._service.last_reports.get(kind),
            }
        return {
            "running": self._running,
            "active_sweeps": self._service.active_sweeps,
            "jobs": jobs,
        }

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
