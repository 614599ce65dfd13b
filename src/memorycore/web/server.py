import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any


def create_app(*, db_path: str | None = None, settings=None, registry=None, transport=None):
    # Lazy import so the CLI works without web deps.
    from fastapi import FastAPI, Request
    from fastapi.responses import JSONResponse, StreamingResponse

    from ..assistant import Assistant, open_capabilities
    from ..chat.session import Message
    from ..config import Settings, SystemConfig, load_system_config, read_system_config, save_system_config
    from ..errors import ConfigIncomplete, ConfigMissing
    from ..store.kv import SQLiteKeyValueStore

    settings = settings or Settings()
    db_default = db_path or settings.db_path

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        kv = SQLiteKeyValueStore(db_default)
        try:
            if registry is not None:
                app.state.assistant = Assistant(kv=kv, registry=registry, settings=settings, transport=transport)
                yield
            else:
                cfg = read_system_config(kv)
                async with open_capabilities(settings, cfg.mcp_address if cfg else None) as reg:
                    app.state.assistant = Assistant(kv=kv, registry=reg, settings=settings, transport=transport)
                    yield
        finally:
            kv.close()

    app = FastAPI(title="Memory Core", version="0.1.0", lifespan=lifespan)

    def _assistant(request: Request) -> Assistant:
        return request.app.state.assistant

    def _message_dict(a: Assistant, m: Message) -> dict[str, Any]:
        return {"id": m.id, "role": m.role, "content": m.content, "saved": a.is_saved(m)}

    @app.get("/api/config")
    async def get_config(request: Request):
        cfg = read_system_config(_assistant(request).kv)
        if cfg is None:
            return {"ok": True, "config": None}
        data = cfg.to_dict()
        data["apiKey"] = "***" if cfg.api_key else ""
        return {"ok": True, "config": data, "missing": cfg.missing_fields()}

    @app.post("/api/config")
    async def set_config(request: Request, payload: dict[str, Any]):
        kv = _assistant(request).kv
        cur = (read_system_config(kv) or SystemConfig()).to_dict()
        cur.update({k: str(v) for k, v in payload.items() if k in cur and v is not None})
        save_system_config(kv, SystemConfig.from_dict(cur))
        return {"ok": True}

    @app.get("/api/messages")
    async def messages(request: Request):
        a = _assistant(request)
        return {"ok": True, "messages": [_message_dict(a, m) for m in a.messages]}

    @app.post("/api/chat")
    async def chat(request: Request, payload: dict[str, Any]):
        a = _assistant(request)
        text = str(payload.get("message") or "").strip()
        if not text:
            return JSONResponse({"ok": False, "error": "message is required"}, status_code=400)

        # Validate before opening the stream so config errors get a proper status.
        try:
            load_system_config(a.kv)
        except (ConfigMissing, ConfigIncomplete) as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)

        queue: asyncio.Queue = asyncio.Queue()

        def on_update(msg: Message) -> None:
            queue.put_nowait({"id": msg.id, "content": msg.content})

        async def run_turn():
            try:
                return await a.chat_turn(text, on_update=on_update)
            finally:
                queue.put_nowait(None)

        async def body():
            # Tracked so the turn finishes even if the client disconnects.
            task = a.tasks.spawn("chat", run_turn(), subject=text[:80])
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield json.dumps(item, ensure_ascii=False) + "\n"
            record = await asyncio.shield(task)
            session = record.result if record.status == "done" else None
            final = {"done": True, "state": session.state.value if session else "failed"}
            if session is not None and session.reply is not None:
                final["id"] = session.reply.id
                final["content"] = session.reply.content
            yield json.dumps(final, ensure_ascii=False) + "\n"

        return StreamingResponse(body(), media_type="application/x-ndjson")

    @app.get("/api/saved")
    async def saved(request: Request):
        store = _assistant(request).store
        return {"ok": True, "saved": [m.to_dict() for m in store.list()]}

    @app.post("/api/saved")
    async def save(request: Request, payload: dict[str, Any]):
        a = _assistant(request)
        message_id = str(payload.get("message_id") or "")
        try:
            added = a.save_message(message_id)
        except KeyError:
            return JSONResponse({"ok": False, "error": f"Unknown message id: {message_id}"}, status_code=404)
        return {"ok": True, "saved": added}

    @app.delete("/api/saved/{index}")
    async def delete_saved(request: Request, index: int):
        try:
            _assistant(request).store.remove(index)
        except IndexError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=404)
        return {"ok": True}

    @app.post("/api/saved/{index}/extract")
    async def extract_saved(request: Request, index: int):
        try:
            task = _assistant(request).extract_saved(index)
        except IndexError:
            return JSONResponse({"ok": False, "error": f"No saved message at index {index}"}, status_code=404)
        return {"ok": True, "started": task is not None}

    @app.get("/api/graph")
    async def graph(request: Request, refresh: bool = True):
        g = _assistant(request).graph
        if refresh:
            await g.refresh()
        return {"ok": g.error is None, "error": g.error, "graph": g.view.to_dict()}

    @app.get("/api/tasks")
    async def tasks(request: Request):
        records = _assistant(request).tasks.records
        return {
            "ok": True,
            "tasks": [
                {"id": r.task_id, "kind": r.kind, "subject": r.subject, "status": r.status, "error": r.error}
                for r in records
            ],
        }

    return app
