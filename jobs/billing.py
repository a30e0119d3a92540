import time
from threading import Thread

from core.callback_service import prune_payment_events
from core.config import cfg
from core.db import DB
from core.billing_service import sweep_expired_subscriptions
from core.log import get_logger, trace_ctx
from core.events import log_event, E

logger = get_logger(__name__)

MIN_INTERVAL_SECONDS = 300


def sweep_interval() -> int:
    return max(MIN_INTERVAL_SECONDS, cfg.get_int("billing.subscription_sweep_interval_seconds", 3600) or 3600)


def run_sweep_once(session) -> dict:
    """到期订阅转 expired，并清理超过保留期的幂等标记。"""
    result = sweep_expired_subscriptions(session=session, limit=1000)
    retention = cfg.get_int("payments.event_retention_days", 30)
    result["pruned_events"] = prune_payment_events(session, retention_days=retention)
    return result


def _worker_loop():
    interval = sweep_interval()
    while True:
        with trace_ctx():
            session = None
            try:
                session = DB.get_session()
                log_event(logger, E.SWEEP_START, interval=interval)
                result = run_sweep_once(session)
                log_event(
                    logger,
                    E.SWEEP_COMPLETE,
                    expired=int(result.get("total", 0) or 0),
                    pruned=int(result.get("pruned_events", 0) or 0),
                )
            except Exception:
                # 单轮失败不终止后台线程，下一轮重试
                logger.exception("订阅到期扫描异常")
                if session is not None:
                    session.rollback()
            finally:
                if session is not None:
                    session.close()
        time.sleep(interval)


def start_subscription_sweep_worker():
    t = Thread(target=_worker_loop, name="subscription-sweep", daemon=True)
    t.start()
    return t
