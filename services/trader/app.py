from __future__ import annotations
import asyncio
import os
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request

from libs.common.errors import GatewayError
from services.trader.config import load_config
from services.trader.runtime import TraderRuntime, build_runtime


def _live_runtime() -> TraderRuntime:
    return build_runtime(load_config())


def create_app(runtime_factory: Optional[Callable[[], TraderRuntime]] = None) -> FastAPI:
    factory = runtime_factory or _live_runtime

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = factory()
        app.state.runtime = rt
        task = None
        if rt.config.scheduler.enabled:
            task = asyncio.create_task(rt.scheduler.run_forever())
        try:
            yield
        finally:
            rt.scheduler.stop()
            if task is not None:
                await task

    app = FastAPI(title="Futures Bracket Trader API", lifespan=lifespan)

    def _rt(request: Request) -> TraderRuntime:
        return request.app.state.runtime

    # ---------------- Health ----------------
    @app.get("/health")
    async def health(request: Request):
        rt = _rt(request)
        sch = rt.scheduler
        return {
            "ok": True,
            "env": rt.config.env,
            "mode": rt.config.exchange.mode,
            "scheduler": {
                "enabled": rt.config.scheduler.enabled,
                "running": sch.running,
                "runs": sch.runs,
                "skipped": sch.skipped,
                "last_error": sch.last_error,
            },
        }

    # ---------------- Univers ----------------
    @app.get("/symbols")
    async def symbols(request: Request):
        rt = _rt(request)
        try:
            syms = await rt.context.universe.resolve()
        except GatewayError as e:
            raise HTTPException(503, f"exchange indisponible: {e}")
        return {"symbols": list(syms), "quote_asset": rt.config.universe.quote_asset}

    # ---------------- Stratégie ----------------
    @app.get("/strategy/preview/{symbol}")
    async def strategy_preview(symbol: str, request: Request):
        """Snapshot + décision pour `symbol`, sans toucher aux ordres."""
        try:
            return await _rt(request).preview(symbol.upper())
        except GatewayError as e:
            raise HTTPException(503, f"exchange indisponible: {e}")

    # ---------------- Cycle ----------------
    @app.get("/cycle/last")
    async def cycle_last(request: Request):
        report = _rt(request).last_report
        if report is None:
            raise HTTPException(404, "aucun cycle exécuté")
        return report.to_dict()

    @app.post("/cycle/run")
    async def cycle_run(request: Request):
        rt = _rt(request)
        sch = rt.scheduler
        if sch.overlap_policy == "skip" and sch.running:
            raise HTTPException(409, "un cycle est déjà en cours")
        skipped = sch.skipped
        report = await sch.tick()
        if report is None:
            if sch.skipped > skipped:
                raise HTTPException(409, "un cycle est déjà en cours")
            raise HTTPException(500, f"cycle en échec: {sch.last_error}")
        return report.to_dict()

    return app


app = create_app()


def serve() -> None:
    """API + scheduler dans un seul process (API_HOST / API_PORT)."""
    uvicorn.run("services.trader.app:app", host=os.getenv("API_HOST", "0.0.0.0"),
                port=int(os.getenv("API_PORT", "8000")))


if __name__ == "__main__":
    serve()
