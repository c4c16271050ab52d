# src/scanner/main.py
import asyncio

import structlog
from dotenv import load_dotenv

from scanner.config import AppConfig, ConfigStore
from scanner.data.store import RollingSeriesStore
from scanner.data.mirror_redis import RedisMirror
from scanner.signals.aggregator import SignalAggregator
from scanner.signals.engine import SignalEngine
from scanner.broadcast.hub import Broadcaster
from scanner.broadcast.ws_server import WSConsumerServer, WSServerConfig
from scanner.broadcast.notifiers import ConsoleNotifier
from scanner.broadcast.formatting import format_signals_pretty
from scanner.ingest.bybit_ws import BybitWS, BybitWSConfig
from scanner.ingest.bybit_rest import bootstrap

load_dotenv()
log = structlog.get_logger()


async def main():
    cfg = AppConfig.from_env()

    # Symbols + warm history (REST). Streaming still works if this fails.
    symbols = cfg.symbols
    seed_events = []
    if cfg.rest_bootstrap or not symbols:
        try:
            symbols, seed_events = await bootstrap(
                cfg.rest_url, symbols, cfg.kline_intervals, symbol_limit=cfg.symbol_limit
            )
        except Exception as e:
            log.warning("rest_bootstrap_failed", err=str(e))
    if not symbols:
        symbols = ["BTCUSDT", "ETHUSDT"]
        log.info("symbols_fallback", symbols=symbols)

    # Core
    store = RollingSeriesStore()
    for evt in seed_events:
        store.ingest(evt)
    log.info("store_seeded", events=len(seed_events), symbols=len(store.symbols()))

    thresholds = ConfigStore(cfg.thresholds)
    aggregator = SignalAggregator(store, thresholds)
    hub = Broadcaster(queue_size=cfg.consumer_queue_size, send_timeout_s=cfg.consumer_send_timeout_s)

    q_events = asyncio.Queue(maxsize=10_000)
    engine = SignalEngine(store, aggregator, hub, thresholds, q_events, eval_interval_s=cfg.eval_interval_s)

    # Ingestor
    ingestor = BybitWS(
        BybitWSConfig(
            stream_url=cfg.stream_url,
            symbols=symbols,
            kline_intervals=cfg.kline_intervals,
            orderbook_depth=cfg.orderbook_depth,
            reconnect_delay_s=cfg.reconnect_delay_s,
        ),
        q_events,
    )

    # Consumers
    server = WSConsumerServer(hub, WSServerConfig(host=cfg.ws_host, port=cfg.ws_port))

    if cfg.print_alerts:
        console = ConsoleNotifier(format_fn=lambda e: format_signals_pretty(e, cfg.alert_tz))
        cid = await hub.connect(console.send, consumer_id="console")
        hub.subscribe(cid, ["signals"])

    mirror = RedisMirror(cfg.redis_url, enabled=cfg.redis_mirror)
    if cfg.redis_mirror:
        await mirror.start()
        cid = await hub.connect(mirror.send, consumer_id="redis_mirror")
        hub.subscribe(cid, ["signals"])
        log.info("redis_mirror_enabled", url=cfg.redis_url)

    await engine.start_generation()

    tasks = [
        ingestor.start(),
        engine.start(),
        server.start(),
    ]

    try:
        await asyncio.gather(*tasks)
    finally:
        # graceful shutdown
        for obj in (engine, ingestor, server, mirror):
            try:
                await obj.stop()
            except Exception as e:
                log.warning("shutdown_error", component=type(obj).__name__, err=str(e))
        await hub.close()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
