from __future__ import annotations

from aiohttp import web
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from ingest_core import IngestionEngine


async def _healthz(_request):
    return web.Response(text="ok", content_type="text/plain")


def build_app(engine: IngestionEngine) -> web.Application:
    app = web.Application()

    async def _readyz(_request):
        running = engine.scheduler.processing_ids()
        return web.json_response({"ready": True, "running_jobs": len(running)})

    async def _metrics(_request):
        data = generate_latest()
        return web.Response(body=data, headers={"Content-Type": CONTENT_TYPE_LATEST})

    async def _queues(_request):
        data = [
            {"id": q.id, "priority": q.priority, "max_size": q.max_size, "current_size": q.current_size, "dead_letter": q.is_dead_letter}
            for q in engine.get_queues()
        ]
        return web.json_response(data)

    async def _verify_chain(request):
        tenant = request.match_info["tenant"]
        res = engine.verify_hash_chain(tenant)
        data = {"tenant_id": tenant, "ok": res.ok, "length": res.length, "broken_at": res.broken_at, "reason": res.reason}
        return web.json_response(data, status=200 if res.ok else 409)

    app.add_routes([
        web.get("/healthz", _healthz),
        web.get("/readyz", _readyz),
        web.get("/metrics", _metrics),
        web.get("/queues", _queues),
        web.get("/chains/{tenant}/verify", _verify_chain),
    ])
    return app


async def start_health_server(engine: IngestionEngine, port: int) -> web.AppRunner:
    runner = web.AppRunner(build_app(engine))
    await runner.setup()
    site = web.TCPSite(runner, host="0.0.0.0", port=port)
    await site.start()
    return runner
