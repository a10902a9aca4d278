import asyncio
import logging
import signal

from services.trader.config import load_config
from services.trader.runtime import build_runtime

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


async def main() -> None:
    cfg = load_config()
    logging.basicConfig(level=cfg.log_level, format=LOG_FORMAT)
    rt = build_runtime(cfg)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, rt.scheduler.stop)
        except NotImplementedError:
            # Windows : KeyboardInterrupt fait le travail
            logger.debug("[runner] no signal handler for %s", sig)

    if not cfg.scheduler.enabled:
        logger.warning("[runner] scheduler.enabled=false, nothing to run")
        return

    strat = cfg.strategy
    logger.info("[runner] started env=%s mode=%s rule_set=%s tf=%s interval=%ss",
                cfg.env, cfg.exchange.mode, strat.rule_set, strat.timeframe, cfg.scheduler.interval_s)
    await rt.scheduler.run_forever()
    logger.info("[runner] bye")


if __name__ == "__main__":
    asyncio.run(main())
