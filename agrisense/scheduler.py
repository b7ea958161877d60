"""
Scheduled analytics: a daily analysis sweep over every farmer with an active
device, and a two-hourly sweep for critically dry soil.

Both sweeps run on the application's event loop. A sweep that is already
running cannot be started again; a second trigger raises ``SweepAlreadyRunning``.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

from sqlmodel import Session, select

from agrisense import config
from agrisense.aggregator import build_farm_context, sensor_snapshot
from agrisense.alerts import deliver_alert, dispatch_alert, store_alert
from agrisense.analysis import analyze_data
from agrisense.database import engine
from agrisense.errors import InputValidationError, NotFoundError, SweepAlreadyRunning
from agrisense.models import Device, FarmAlert, FarmAnalysis, SensorReading, User

logger = logging.getLogger(__name__)

DAILY = "daily"
MOISTURE = "moisture"
CRITICAL_MOISTURE = 15


def seconds_until_daily(hour: int, tz: ZoneInfo, now: Optional[datetime] = None) -> float:
    now = now or datetime.now(tz)
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def seconds_until_interval(hours: int, tz: ZoneInfo, now: Optional[datetime] = None) -> float:
    """Seconds until the next hour of the day divisible by ``hours``."""
    now = now or datetime.now(tz)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    target = midnight + timedelta(hours=(now.hour // hours + 1) * hours)
    return (target - now).total_seconds()


def low_moisture_messages(moisture: float) -> Tuple[str, str]:
    bangla = f"🚨 জরুরি সতর্কতা! আপনার মাটির আর্দ্রতা {moisture}% যা খুবই কম। দ্রুত সেচ দিন। - AgriSense"
    english = f"Critical Alert! Your soil moisture is {moisture}% which is very low. Please irrigate immediately. - AgriSense"
    return bangla, english


class AnalyticsScheduler:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        tz_name: str = config.SCHEDULER_TIMEZONE,
        daily_hour: int = config.DAILY_ANALYTICS_HOUR,
        moisture_interval_hours: int = config.MOISTURE_CHECK_INTERVAL_HOURS,
        farmer_delay: float = 2.0,
        moisture_delay: float = 3.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._session_factory = session_factory or (lambda: Session(engine))
        self.tz = ZoneInfo(tz_name)
        self.daily_hour = daily_hour
        self.moisture_interval_hours = moisture_interval_hours
        self.farmer_delay = farmer_delay
        self.moisture_delay = moisture_delay
        self._sleep = sleep

        self._sweeps: Dict[str, Callable[[], Awaitable[Dict[str, int]]]] = {
            DAILY: self.run_daily_analytics,
            MOISTURE: self.check_critical_moisture,
        }
        self._running: Set[str] = set()
        self._last_runs: Dict[str, Dict[str, Any]] = {}
        self._timers: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()

    # --- Lifecycle ---

    def start(self):
        if self._timers:
            return
        self._timers = [
            asyncio.create_task(self._timer(DAILY, lambda: seconds_until_daily(self.daily_hour, self.tz))),
            asyncio.create_task(self._timer(
                MOISTURE, lambda: seconds_until_interval(self.moisture_interval_hours, self.tz))),
        ]
        logger.info(
            "Scheduled analytics started: daily at %02d:00, moisture check every %s hours (%s)",
            self.daily_hour, self.moisture_interval_hours, self.tz.key,
        )

    async def stop(self):
        tasks = self._timers + list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers = []
        logger.info("Scheduled analytics stopped")

    async def _timer(self, kind: str, delay: Callable[[], float]):
        while True:
            await self._sleep(delay())
            try:
                await self.trigger_now(kind)
            except SweepAlreadyRunning:
                logger.warning("Skipping scheduled %s sweep, previous run still in progress", kind)
            except Exception:
                # Already recorded in _last_runs by _run
                logger.exception("Scheduled %s sweep failed, waiting for the next run", kind)

    # --- Triggers ---

    def _claim(self, kind: str):
        if kind not in self._sweeps:
            raise InputValidationError(f"Unknown sweep '{kind}', expected one of: {', '.join(self._sweeps)}")
        if kind in self._running:
            raise SweepAlreadyRunning(f"The {kind} sweep is already running")
        self._running.add(kind)

    async def _run(self, kind: str) -> Dict[str, int]:
        started_at = datetime.now(timezone.utc)
        summary: Dict[str, int] = {}
        error = None
        try:
            summary = await self._sweeps[kind]()
            return summary
        except Exception as e:
            error = str(e)
            logger.exception("%s sweep failed", kind)
            raise
        finally:
            self._running.discard(kind)
            self._last_runs[kind] = {
                "startedAt": started_at.isoformat(),
                "finishedAt": datetime.now(timezone.utc).isoformat(),
                "summary": summary,
                "error": error,
            }

    async def trigger_now(self, kind: str) -> Dict[str, int]:
        """Runs a sweep to completion. Raises ``SweepAlreadyRunning`` on overlap."""
        self._claim(kind)
        return await self._run(kind)

    def start_sweep(self, kind: str) -> asyncio.Task:
        """Starts a sweep in the background; the overlap check happens before returning."""
        self._claim(kind)
        task = asyncio.create_task(self._run(kind))
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task):
        self._background.discard(task)
        # Already logged and recorded in _last_runs by _run
        if not task.cancelled():
            task.exception()

    def is_running(self, kind: Optional[str] = None) -> bool:
        return bool(self._running) if kind is None else kind in self._running

    def status(self) -> Dict[str, Any]:
        return {
            "isRunning": self.is_running(),
            "running": sorted(self._running),
            "started": bool(self._timers),
            "lastRuns": self._last_runs,
            "scheduledTasks": [
                {
                    "name": "Daily Morning Analytics",
                    "kind": DAILY,
                    "schedule": f"0 {self.daily_hour} * * *",
                    "timezone": self.tz.key,
                    "description": f"Runs farm analysis for all farmers at {self.daily_hour:02d}:00",
                },
                {
                    "name": "Critical Moisture Check",
                    "kind": MOISTURE,
                    "schedule": f"0 */{self.moisture_interval_hours} * * *",
                    "timezone": self.tz.key,
                    "description": f"Alerts farmers whose soil moisture is below {CRITICAL_MOISTURE}%",
                },
            ],
        }

    # --- Daily sweep ---

    def _farmers_with_active_devices(self) -> List[int]:
        with self._session_factory() as db:
            active_owners = select(Device.user_id).where(Device.is_active == True)  # noqa: E712
            farmers = db.exec(
                select(User.id)
                .where(User.role == "farmer")
                .where(User.id.in_(active_owners))
                .order_by(User.id)
            ).all()
        return list(farmers)

    async def run_daily_analytics(self) -> Dict[str, int]:
        farmer_ids = self._farmers_with_active_devices()
        logger.info("Running daily analytics for %d farmers", len(farmer_ids))

        summary = {"farmers": len(farmer_ids), "processed": 0, "skipped": 0, "failed": 0}
        for index, farmer_id in enumerate(farmer_ids):
            if index:
                await self._sleep(self.farmer_delay)
            try:
                with self._session_factory() as db:
                    await self.process_farmer(db, farmer_id)
                summary["processed"] += 1
            except NotFoundError as e:
                logger.info("Skipping farmer %s: %s", farmer_id, e.message)
                summary["skipped"] += 1
            except Exception:
                logger.exception("Error processing farmer %s", farmer_id)
                summary["failed"] += 1

        logger.info("Daily analytics completed: %s", summary)
        return summary

    async def process_farmer(self, db: Session, farmer_id: int):
        context = await build_farm_context(db, farmer_id)
        result = await analyze_data(context, farmer_id)
        logger.info(
            "Analysis completed for %s: moisture=%s%%, actionRequired=%s",
            context.farmer.name,
            context.sensors.soil_moisture if context.sensors else None,
            result.action_required,
        )

        db.add(FarmAnalysis(
            user_id=farmer_id,
            device_id=context.device_id,
            analysis_data=context.to_payload(),
            ai_analysis=result.analysis,
            action_required=result.action_required,
            sms_message=result.message,
        ))
        db.commit()

        await dispatch_alert(db, context, result, context.farmer.mobile)

    # --- Critical moisture sweep ---

    def _critical_devices(self) -> List[Tuple[int, int, float]]:
        with self._session_factory() as db:
            rows = db.exec(
                select(SensorReading.device_id, Device.user_id, SensorReading.moisture_level)
                .join(Device, Device.id == SensorReading.device_id)
                .where(Device.is_active == True)  # noqa: E712
                .where(Device.user_id != None)  # noqa: E711
                .where(SensorReading.moisture_level < CRITICAL_MOISTURE)
                .order_by(SensorReading.device_id)
            ).all()
        return [tuple(row) for row in rows]

    async def check_critical_moisture(self) -> Dict[str, int]:
        devices = self._critical_devices()
        if not devices:
            logger.info("No critical moisture levels found")
            return {"devices": 0, "alerted": 0, "failed": 0}

        logger.warning("Found %d devices with critical moisture", len(devices))
        summary = {"devices": len(devices), "alerted": 0, "failed": 0}
        for index, (device_id, user_id, moisture) in enumerate(devices):
            if index:
                await self._sleep(self.moisture_delay)
            try:
                with self._session_factory() as db:
                    await self.process_critical_moisture(db, device_id, user_id, moisture)
                summary["alerted"] += 1
            except Exception:
                logger.exception("Error processing critical alert for device %s", device_id)
                summary["failed"] += 1
        return summary

    async def process_critical_moisture(self, db: Session, device_id: int, user_id: int, moisture: float):
        context = await build_farm_context(db, user_id, require_sensors=False)
        logger.warning("Critical moisture alert for %s: %s%%", context.farmer.name, moisture)

        # The context picks the farmer's first active device; the call must describe the dry one
        reading = db.get(SensorReading, device_id)
        context = context.model_copy(update={
            "device_id": device_id,
            "sensors": sensor_snapshot(reading) if reading else None,
        })
        bangla, english = low_moisture_messages(moisture)
        alert = store_alert(db, FarmAlert(
            user_id=user_id,
            device_id=device_id,
            alert_type="low_moisture",
            severity="critical",
            message_bangla=bangla,
            message_english=english,
            sensor_data={
                "moisture_level": moisture,
                "timestamp": reading.last_updated.isoformat() if reading else None,
            },
        ))
        await deliver_alert(db, alert, context, context.farmer.mobile, bangla, "low_moisture")
