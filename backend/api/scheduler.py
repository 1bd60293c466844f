"""Background scheduler for retraining, drift evaluation and event retention"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger
import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from api.dependencies import ServiceContainer
from api.utils.metrics import increment_counter
from behaviorradar.log_config import logger

scheduler: Optional[AsyncIOScheduler] = None

# Dedicated pool for ML jobs so training never competes with request threads.
# Two workers: a long training run must not hold up the drift check.
ML_JOB_POOL: Optional[ThreadPoolExecutor] = None

# Timeout configuration (in seconds)
DRIFT_JOB_TIMEOUT = 300
PURGE_JOB_TIMEOUT = 600


async def _run_in_pool(
    label: str,
    fn: Callable[[], Dict[str, Any]],
    timeout: float,
    on_timeout: Optional[Callable[[], None]] = None,
) -> Optional[Dict[str, Any]]:
    """
    Run a blocking job in ML_JOB_POOL with timeout protection.
    
    Errors are logged and swallowed here so one failing job never stops the
    scheduler; the job itself records its outcome.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(loop.run_in_executor(ML_JOB_POOL, fn), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error(f"{label} timed out after {timeout}s")
        if on_timeout is not None:
            on_timeout()
    except Exception as e:
        logger.error(f"{label} failed: {e}", exc_info=True)
    return None


async def run_retraining_job(services: ServiceContainer):
    """
    Daily training run.
    
    Pending RetrainRequested signals from the drift monitor are folded into
    the trigger so the run records why it happened. A run that outlives its
    timeout is cancelled at its next stage boundary.
    """
    def _run_training():
        requests = services.orchestrator.consume_retrain_requests()
        trigger = "scheduled+drift" if requests else "scheduled"
        if requests:
            logger.info(f"Scheduled training honours {len(requests)} retrain requests")
        return services.orchestrator.run(trigger=trigger).to_dict()
    
    timeout = services.config.training_stage_timeout_seconds
    result = await _run_in_pool("Model retraining", _run_training, timeout, on_timeout=services.orchestrator.cancel)
    if result is None:
        return
    
    increment_counter("training_runs_total", {"state": result["state"]})
    logger.info(
        f"Model retraining finished: run={result['run_id']} state={result['state']} "
        f"versions={result['versions']}"
    )


async def run_drift_monitoring_job(services: ServiceContainer):
    """Evaluate serving drift; drift raises an advisory retrain request."""
    def _run_drift_check():
        return services.drift_monitor.evaluate().to_dict()
    
    result = await _run_in_pool("Drift monitoring", _run_drift_check, DRIFT_JOB_TIMEOUT)
    if result is not None:
        logger.info(
            f"Drift monitoring completed: {len(result['psi'])} features checked, "
            f"drifted={result['drifted_features']}"
        )


async def run_retention_purge_job(services: ServiceContainer):
    """Delete trading events older than the retention window."""
    def _purge():
        return {"deleted": services.ingestion.purge_expired()}
    
    result = await _run_in_pool("Event retention purge", _purge, PURGE_JOB_TIMEOUT)
    if result is not None:
        logger.info(f"Event retention purge completed: {result['deleted']} events removed")


def start_scheduler(services: ServiceContainer):
    """Start the background scheduler with the ML maintenance jobs."""
    global scheduler, ML_JOB_POOL
    
    config = services.config
    ML_JOB_POOL = ThreadPoolExecutor(max_workers=2, thread_name_prefix="ml-job-")
    scheduler = AsyncIOScheduler(timezone="UTC")
    
    scheduler.add_job(
        run_retraining_job,
        trigger=CronTrigger(hour=config.training_schedule_hour, minute=0),
        args=[services],
        id='model_retraining',
        name='Daily Model Retraining',
        max_instances=1,
        replace_existing=True
    )
    logger.info(f"Added Model Retraining job (runs daily at {config.training_schedule_hour:02d}:00 UTC)")
    
    scheduler.add_job(
        run_drift_monitoring_job,
        trigger=IntervalTrigger(minutes=config.drift_check_interval_minutes),
        args=[services],
        id='drift_monitoring',
        name='Model Drift Monitoring',
        max_instances=1,
        replace_existing=True
    )
    logger.info(f"Added Drift Monitoring job (runs every {config.drift_check_interval_minutes} minutes)")
    
    scheduler.add_job(
        run_retention_purge_job,
        trigger=CronTrigger(hour=(config.training_schedule_hour + 1) % 24, minute=30),
        args=[services],
        id='event_retention',
        name='Event Retention Purge',
        max_instances=1,
        replace_existing=True
    )
    logger.info("Added Event Retention Purge job (runs daily after retraining)")
    
    scheduler.start()
    logger.info("Scheduler started")


def stop_scheduler():
    """Stop the background scheduler and cleanup the ML pool"""
    global scheduler, ML_JOB_POOL
    
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    scheduler = None
    
    if ML_JOB_POOL is not None:
        try:
            ML_JOB_POOL.shutdown(wait=False, cancel_futures=True)
        except RuntimeError as e:
            logger.debug(f"ML_JOB_POOL shutdown skipped: {e}")
        ML_JOB_POOL = None
        logger.info("ML job pool shut down")
