import argparse
import configparser
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import requests
from selenium.common.exceptions import WebDriverException

from action_scheduler import ROLE_BACKUP, ROLE_PRIMARY, ActionScheduler, ScheduleTarget
from clock_sync import ClockSynchronizer, HttpDateReference, NtpTimeReference
from drift_monitor import DriftMonitor
from errors import ActionTargetMissing, ResultUnparseable, RetriesExhausted, SchedulerTimeout
from latency_probe import LatencyProbe
from logging_utils import configure_logging
from notification_utils import format_result_message, send_notification
from page_automation import ARTIFACTS_DIR, ArtifactStore, SeleniumPageAutomation
from result_extraction import UNKNOWN_POSITION, BoardingPositionExtractor
from retry_policy import RetryPolicy
from scheduling_utils import CRITICAL_THRESHOLD_MS, SystemClock, format_instant, format_remaining, parse_instant_ms
from selector_registry import apply_selector_overrides
from telemetry import TelemetryRecorder

CHECKIN_URL = "https://www.southwest.com/air/check-in/index.html"
TIME_REFERENCE_URL = "https://www.southwest.com/"

PREWARM_THRESHOLD_MS = 5 * 60 * 1000
RESULT_SETTLE_MS = 3000


@dataclass
class CheckinConfig:
    confirmation_number: str
    first_name: str
    last_name: str
    checkin_opens_at: str
    is_backup: bool
    safety_margin_ms: int
    backup_offset_ms: int
    checkin_url: str
    time_reference_url: str
    ntp_server: str
    ntp_port: int
    sync_timeout_seconds: float
    rtt_samples: int
    drift_check_seconds: int
    full_sync_minutes: int
    heartbeat_seconds: int
    drift_threshold_ms: int
    max_retries: int
    retry_interval_ms: int
    max_run_minutes: int
    proxy_server: Optional[str]
    headless: bool
    log_level: str
    json_logs: bool
    artifacts_dir: str
    selectors_path: str
    smtp_server: str
    smtp_port: int
    smtp_user: str
    smtp_pass: str
    notify_email: str

    @classmethod
    def load(cls, path: str = "config.ini") -> "CheckinConfig":
        parser = configparser.ConfigParser()
        parser.optionxform = str

        required = ["CONFIRMATION_NUMBER", "FIRST_NAME", "LAST_NAME", "CHECKIN_OPENS_AT"]

        if not parser.read(path) and any(os.getenv(key) is None for key in required):
            raise FileNotFoundError(
                f"Unable to load configuration. Expected file at '{path}'. "
                "Run config_wizard.py or the web UI to create one, or set the values as environment variables."
            )

        raw_defaults = {k.upper(): v for k, v in parser["DEFAULT"].items()}

        missing = [key for key in required if key not in raw_defaults and os.getenv(key) is None]
        if missing:
            raise KeyError("Configuration missing required keys: " + ", ".join(sorted(missing)))

        problems = []

        def _get(key: str, fallback: Optional[str] = None) -> str:
            value = os.getenv(key, raw_defaults.get(key, fallback))
            if value is None:
                raise KeyError(f"Missing configuration value for {key}")
            return str(value).strip()

        def _to_bool(value: str) -> bool:
            return str(value).strip().lower() in {"1", "true", "yes", "on"}

        def _get_int(key: str, fallback: int) -> int:
            raw = _get(key, str(fallback))
            if not raw:
                return fallback
            try:
                return int(raw)
            except ValueError:
                problems.append(f"{key} must be an integer")
                return fallback

        def _get_float(key: str, fallback: float) -> float:
            raw = _get(key, str(fallback))
            if not raw:
                return fallback
            try:
                return float(raw)
            except ValueError:
                problems.append(f"{key} must be a number")
                return fallback

        opens_at = _get("CHECKIN_OPENS_AT")
        try:
            parse_instant_ms(opens_at)
        except ValueError:
            problems.append("CHECKIN_OPENS_AT must be an ISO-8601 timestamp (e.g. 2026-05-01T14:30:00Z)")

        for key in ("CONFIRMATION_NUMBER", "FIRST_NAME", "LAST_NAME"):
            if not _get(key):
                problems.append(f"{key} must not be empty")

        cfg = cls(
            confirmation_number=_get("CONFIRMATION_NUMBER").upper(),
            first_name=_get("FIRST_NAME"),
            last_name=_get("LAST_NAME"),
            checkin_opens_at=opens_at,
            is_backup=_to_bool(_get("IS_BACKUP", "False")),
            safety_margin_ms=_get_int("SAFETY_MARGIN_MS", 100),
            backup_offset_ms=_get_int("BACKUP_OFFSET_MS", 1000),
            checkin_url=_get("CHECKIN_URL", CHECKIN_URL),
            time_reference_url=_get("TIME_REFERENCE_URL", TIME_REFERENCE_URL),
            ntp_server=_get("NTP_SERVER", "time.google.com"),
            ntp_port=_get_int("NTP_PORT", 123),
            sync_timeout_seconds=_get_float("SYNC_TIMEOUT_SECONDS", 3.0),
            rtt_samples=_get_int("RTT_SAMPLES", 3),
            drift_check_seconds=_get_int("DRIFT_CHECK_SECONDS", 15),
            full_sync_minutes=_get_int("FULL_SYNC_MINUTES", 10),
            heartbeat_seconds=_get_int("HEARTBEAT_SECONDS", 120),
            drift_threshold_ms=_get_int("DRIFT_THRESHOLD_MS", 100),
            max_retries=_get_int("MAX_RETRIES", 5),
            retry_interval_ms=_get_int("RETRY_INTERVAL_MS", 150),
            max_run_minutes=_get_int("MAX_RUN_MINUTES", 360),
            proxy_server=_get("PROXY_SERVER", "") or None,
            headless=_to_bool(_get("HEADLESS", "True")),
            log_level=_get("LOG_LEVEL", "INFO").upper(),
            json_logs=_to_bool(_get("JSON_LOGS", "False")),
            artifacts_dir=_get("ARTIFACTS_DIR", str(ARTIFACTS_DIR)),
            selectors_path=_get("SELECTORS_PATH", "selectors.yml"),
            smtp_server=_get("SMTP_SERVER", "smtp.gmail.com"),
            smtp_port=_get_int("SMTP_PORT", 587),
            smtp_user=_get("SMTP_USER", ""),
            smtp_pass=_get("SMTP_PASS", ""),
            notify_email=_get("NOTIFY_EMAIL", ""),
        )

        if not 0 <= cfg.safety_margin_ms <= 1000:
            problems.append("SAFETY_MARGIN_MS must be between 0 and 1000")
        if cfg.backup_offset_ms <= 0:
            problems.append("BACKUP_OFFSET_MS must be positive")
        if not 0 < cfg.sync_timeout_seconds * 1000 < CRITICAL_THRESHOLD_MS:
            problems.append(f"SYNC_TIMEOUT_SECONDS must be positive and below {CRITICAL_THRESHOLD_MS // 1000}")
        if cfg.rtt_samples < 1:
            problems.append("RTT_SAMPLES must be at least 1")
        if cfg.max_retries < 0:
            problems.append("MAX_RETRIES must not be negative")
        if cfg.retry_interval_ms <= 0:
            problems.append("RETRY_INTERVAL_MS must be positive")
        for key, value in (
            ("DRIFT_CHECK_SECONDS", cfg.drift_check_seconds),
            ("FULL_SYNC_MINUTES", cfg.full_sync_minutes),
            ("HEARTBEAT_SECONDS", cfg.heartbeat_seconds),
            ("MAX_RUN_MINUTES", cfg.max_run_minutes),
        ):
            if value <= 0:
                problems.append(f"{key} must be positive")

        if problems:
            raise ValueError("Invalid configuration: " + "; ".join(problems))
        return cfg

    @property
    def role(self) -> str:
        return ROLE_BACKUP if self.is_backup else ROLE_PRIMARY

    @property
    def checkin_opens_at_ms(self) -> float:
        return parse_instant_ms(self.checkin_opens_at)

    def schedule_target(self) -> ScheduleTarget:
        return ScheduleTarget.for_role(
            self.checkin_opens_at_ms,
            self.role,
            safety_margin_ms=self.safety_margin_ms,
            backup_offset_ms=self.backup_offset_ms,
        )

    def is_smtp_configured(self) -> bool:
        if not self.smtp_user or not self.smtp_pass or not self.notify_email:
            return False
        user = self.smtp_user.lower()
        password = self.smtp_pass.lower()
        if "your_email" in user or "your_app_password" in password:
            return False
        return True

    @staticmethod
    def _mask(value: str, *, keep: int = 2) -> str:
        if not value:
            return ""
        if len(value) <= keep * 2:
            return value[0] + "***" if len(value) > 1 else "*"
        return f"{value[:keep]}***{value[-keep:]}"

    def masked_summary(self) -> str:
        return (
            f"confirmation={self._mask(self.confirmation_number)} | "
            f"passenger={self._mask(self.first_name, keep=1)} {self._mask(self.last_name, keep=1)} | "
            f"opens_at={self.checkin_opens_at} | role={self.role} | margin={self.safety_margin_ms}ms | "
            f"proxy={'on' if self.proxy_server else 'off'}"
        )


class CheckinRunner:
    """One check-in attempt: prepare the form, fire on time, read the result.

    Every collaborator is built from the configuration here; tests inject a
    fake clock, page and time references instead.
    """

    def __init__(
        self,
        cfg: CheckinConfig,
        *,
        clock: Optional[SystemClock] = None,
        page=None,
        artifact_store: Optional[ArtifactStore] = None,
        ntp_reference=None,
        session: Optional[requests.Session] = None,
        extractor: Optional[BoardingPositionExtractor] = None,
        result_settle_ms: float = RESULT_SETTLE_MS,
    ) -> None:
        self.cfg = cfg
        self.clock = clock or SystemClock()
        self.artifact_store = artifact_store or ArtifactStore(cfg.artifacts_dir, run_id=self._run_id())
        self.page = page or SeleniumPageAutomation(
            self.artifact_store,
            headless=cfg.headless,
            proxy_server=cfg.proxy_server,
        )
        self.extractor = extractor or BoardingPositionExtractor()
        self.result_settle_ms = result_settle_ms
        self.telemetry = TelemetryRecorder()

        http_session = session or requests.Session()
        if cfg.proxy_server and session is None:
            http_session.proxies.update({"http": cfg.proxy_server, "https": cfg.proxy_server})

        self.probe = LatencyProbe(
            cfg.time_reference_url,
            session=http_session,
            timeout_seconds=cfg.sync_timeout_seconds,
            clock=self.clock,
        )
        self.synchronizer = ClockSynchronizer(
            ntp_reference
            or NtpTimeReference(
                cfg.ntp_server,
                port=cfg.ntp_port,
                timeout_seconds=cfg.sync_timeout_seconds,
                clock=self.clock,
            ),
            HttpDateReference(self.probe, samples=cfg.rtt_samples),
            clock=self.clock,
            telemetry=self.telemetry,
        )
        self.monitor = DriftMonitor(
            self.synchronizer,
            self.telemetry,
            probe=self.probe,
            clock=self.clock,
            artifact_store=self.artifact_store,
            drift_check_ms=cfg.drift_check_seconds * 1000,
            full_sync_ms=cfg.full_sync_minutes * 60 * 1000,
            heartbeat_ms=cfg.heartbeat_seconds * 1000,
            drift_threshold_ms=cfg.drift_threshold_ms,
            calibration_samples=cfg.rtt_samples,
            label=cfg.role,
        )
        self.retry_policy = RetryPolicy(
            max_retries=cfg.max_retries,
            interval_ms=cfg.retry_interval_ms,
            clock=self.clock,
            telemetry=self.telemetry,
        )
        self.scheduler = ActionScheduler(
            self.synchronizer,
            self.monitor,
            self.retry_policy,
            self.telemetry,
            clock=self.clock,
            max_run_ms=cfg.max_run_minutes * 60 * 1000,
        )

    def _run_id(self) -> str:
        return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S") + f"_{self.cfg.role}"

    def run(self) -> dict:
        cfg = self.cfg
        target = cfg.schedule_target()
        result = {
            "success": False,
            "boarding_position": None,
            "confirmation_number": cfg.confirmation_number,
            "checkin_opens_at": cfg.checkin_opens_at,
            "role": cfg.role,
            "actual_fire_time": None,
            "timing_offset_ms": None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "error": None,
            "artifacts": [],
            "telemetry": {},
        }

        # The run ceiling covers the whole run, not only the wait.
        self.scheduler.arm_deadline()
        try:
            self.synchronizer.sync()
            self.scheduler.check_deadline("page preparation")
            self._prepare_page()
            self.scheduler.check_deadline("the wait for the fire instant")

            if self.scheduler.remaining_ms(target) > PREWARM_THRESHOLD_MS:
                self.probe.warm_up()

            schedule = self.scheduler.execute(
                target,
                dispatch=lambda delay_ms: self.page.dispatch_action(self.page.SUBMIT_SELECTORS, delay_ms),
                read_content=self.page.read_content,
            )
            result["actual_fire_time"] = format_instant(schedule.actual_fire_time_ms)
            result["timing_offset_ms"] = round(schedule.timing_offset_ms, 1)

            self._collect_result(result)
        except RetriesExhausted as exc:
            logging.warning("Check-in window not yet open after %s retries", exc.retry_count)
            result["error"] = str(exc)
            self._capture("result")
        except (ActionTargetMissing, SchedulerTimeout, WebDriverException) as exc:
            logging.error("Check-in failed: %s", exc)
            result["error"] = str(exc)
            self._capture("error")
        except Exception as exc:  # noqa: BLE001
            logging.exception("Unexpected error during check-in: %s", exc)
            result["error"] = str(exc)
            self._capture("error")

        report = self.telemetry.report()
        if result["timing_offset_ms"] is None and report.timing_offset_ms is not None:
            result["timing_offset_ms"] = round(report.timing_offset_ms, 1)
            result["actual_fire_time"] = format_instant(cfg.checkin_opens_at_ms + report.timing_offset_ms)
        result["telemetry"] = report.to_dict()
        result["artifacts"] = list(self.artifact_store.saved)
        self.artifact_store.save("OUTPUT", json.dumps(result, indent=2), "application/json")
        self._log_summary(result)
        return result

    def _prepare_page(self) -> None:
        self.page.navigate(self.cfg.checkin_url)
        self._capture("initial")
        self.page.wait_for_form()
        self.page.fill_form(self.cfg.confirmation_number, self.cfg.first_name, self.cfg.last_name)
        self._capture("form-filled")
        logging.info("Form filled completely")

    def _collect_result(self, result: dict) -> None:
        self.clock.sleep_ms(self.result_settle_ms)
        self._capture("result")
        try:
            self.artifact_store.save("final-page-html", self.page.page_source(), "text/html")
        except WebDriverException as exc:
            logging.debug("Failed to persist final page source: %s", exc)

        content = self.page.read_content()
        try:
            position, strategy = self.extractor.extract_with_source(content)
        except ResultUnparseable as exc:
            # The submission went out on time; only the parsing failed.
            logging.warning("%s", exc)
            result["success"] = True
            result["boarding_position"] = UNKNOWN_POSITION
            result["error"] = str(exc)
            return

        logging.info("Found boarding position %s (%s)", position, strategy)
        result["success"] = True
        result["boarding_position"] = position

    def _capture(self, kind: str) -> None:
        try:
            self.page.capture_artifact(kind)
        except WebDriverException as exc:
            logging.debug("Could not capture %s screenshot: %s", kind, exc)

    def _log_summary(self, result: dict) -> None:
        telemetry = result["telemetry"]
        logging.info("Timing telemetry summary:")
        logging.info("  NTP sync: %s", "ok" if telemetry.get("sync_succeeded") else "failed")
        logging.info("  Local drift: %s ms", telemetry.get("local_drift_ms"))
        logging.info("  RTT: %s ms", telemetry.get("rtt_ms"))
        logging.info("  Calibrated RTT: %s ms", telemetry.get("calibrated_rtt_ms"))
        logging.info("  Sync method: %s", telemetry.get("sync_method"))
        logging.info("  Drift checks: %s", len(telemetry.get("drift_checks", [])))
        logging.info("  Retry attempts: %s", telemetry.get("retry_count"))
        logging.info("  Final timing offset: %s ms", result.get("timing_offset_ms"))

    def close(self) -> None:
        self.page.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Precision auto check-in")
    parser.add_argument("--config", default="config.ini", help="Path to config.ini (default: %(default)s)")
    parser.add_argument(
        "--backup",
        dest="is_backup",
        action="store_true",
        default=None,
        help="Run as the backup instance (fires after the primary).",
    )
    parser.add_argument(
        "--no-headless",
        dest="headless",
        action="store_false",
        default=None,
        help="Run Chrome in visible mode (useful for debugging).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines.")
    args = parser.parse_args()

    try:
        cfg = CheckinConfig.load(args.config)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        configure_logging()
        logging.error("Configuration error: %s", exc)
        raise SystemExit(1) from exc

    if args.is_backup is not None:
        cfg.is_backup = args.is_backup
    if args.headless is not None:
        cfg.headless = args.headless

    configure_logging(debug=args.debug, json_logs=args.json_logs or cfg.json_logs, level=cfg.log_level)
    apply_selector_overrides(SeleniumPageAutomation, cfg.selectors_path)

    target = cfg.schedule_target()
    print("🚀 Precision check-in started")
    print("=" * 50)
    print(f"🎫 Confirmation: {cfg.confirmation_number}")
    print(f"🕐 Check-in opens: {cfg.checkin_opens_at}")
    print(f"🎯 Fire instant: {format_instant(target.fire_instant_ms)} ({cfg.role})")
    print(f"⏱️  Time until fire: {format_remaining(target.fire_instant_ms - SystemClock().now_ms())}")
    print(f"🕶️ Headless mode: {'On' if cfg.headless else 'Off'}")
    print("=" * 50)
    logging.info("Configuration summary: %s", cfg.masked_summary())

    runner = CheckinRunner(cfg)
    runner.artifact_store.prune_runs()
    try:
        result = runner.run()
    except KeyboardInterrupt:
        print("\n🛑 Check-in aborted (KeyboardInterrupt)")
        raise SystemExit(130)
    finally:
        runner.close()
        print("🧹 Browser session closed")

    subject = "Check-in succeeded" if result["success"] else "Check-in failed"
    send_notification(cfg, f"{subject}: {cfg.confirmation_number}", format_result_message(result))
    print(json.dumps(result, indent=2))

    if not result["success"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
