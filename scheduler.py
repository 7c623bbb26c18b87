import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from config import get_settings
from database import session_scope
from models import Budget
from periods import SourcePeriodService
from services import (
    BudgetService,
    OutflowService,
    create_missing_everything_else_budgets,
)
from summaries import SummaryService


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


def _user_ids(session) -> list[int]:
    return sorted(set(session.scalars(select(Budget.user_id).distinct()).all()))


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_periods_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=periods source={source}")
        with session_scope() as session:
            periods = SourcePeriodService(session)
            created = periods.ensure_horizon()
            flagged = periods.refresh_current_flags()
            create_missing_everything_else_budgets(session)
            budget_periods = 0
            outflow_periods = 0
            for user_id in _user_ids(session):
                budget_periods += BudgetService(session, user_id).extend_periods()
                outflow_periods += OutflowService(session, user_id).extend_periods()
            logger.info(
                f"scheduler_run: job=periods source={source} source_periods={created} "
                f"current_flags={flagged} budget_periods={budget_periods} "
                f"outflow_periods={outflow_periods}"
            )

    def _run_summaries_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=summaries source={source}")
        with session_scope() as session:
            summaries = SummaryService(session)
            rebuilt = 0
            for user_id in _user_ids(session):
                rebuilt += summaries.rebuild_all(user_id)
            logger.info(f"scheduler_run: job=summaries source={source} rebuilt={rebuilt}")

    def start(self) -> None:
        self._run_periods_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_periods_job,
            trigger,
            args=["daily_03:15"],
            id="periods_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_summaries_job,
            trigger,
            args=["hourly_safety_net"],
            id="summaries_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 periods and hourly summaries")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
