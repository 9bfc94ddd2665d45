"""
HTTP surface for the live conversation.

Read endpoints are public; control endpoints (start, stop, reset, archive)
require the shared admin code in the JSON body.
"""
from __future__ import annotations

import asyncio
import random
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import httpx
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.staticfiles import StaticFiles
from loguru import logger
from pydantic import BaseModel

from .agents import PersonaAgent, load_system_prompt
from .archive import ArchiveManager, GitHubArchiveSink, LocalArchiveSink
from .broadcast import KEEPALIVE, BroadcastHub, sse_frame
from .config import Settings, load_settings
from .emergency import EmergencyArchiver
from .gallery import Gallery, ScheduledImageGenerator
from .generator import ResponseGenerator
from .images import ImageSideChannel, OpenAIImageGenerator
from .llm import build_chat_sources, get_image_client
from .manager import ConversationManager
from .memory import AgentMemoryStore
from .personas import Persona, load_personas
from .states import Turn
from .store import StateStore


def is_valid_admin(code: Optional[str], secret: Optional[str]) -> bool:
    if not secret or not code:
        return False
    return secrets.compare_digest(code.encode("utf-8"), secret.encode("utf-8"))


class AdminRequest(BaseModel):
    adminCode: Optional[str] = None


class UserChatRequest(BaseModel):
    message: Optional[str] = None
    agent: Optional[str] = None
    userId: Optional[str] = None


@dataclass
class Services:
    settings: Settings
    store: StateStore
    hub: BroadcastHub
    memory: AgentMemoryStore
    personas: Dict[Turn, Persona]
    agents: Dict[Turn, PersonaAgent]
    generator: ResponseGenerator
    images: ImageSideChannel
    manager: ConversationManager
    archive: ArchiveManager
    gallery: Gallery
    scheduled_images: Optional[ScheduledImageGenerator]
    emergency: EmergencyArchiver

    def turn_for(self, agent_key: str) -> Optional[Turn]:
        return next((t for t, p in self.personas.items() if p.key == agent_key), None)


def build_services(
    settings: Settings,
    chat_sources: Optional[Sequence[Tuple[str, Any]]] = None,
    image_generator: Optional[Any] = None,
    github_client: Optional[httpx.AsyncClient] = None,
    rng: Optional[random.Random] = None,
) -> Services:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.archives_dir.mkdir(parents=True, exist_ok=True)
    settings.gallery_dir.mkdir(parents=True, exist_ok=True)

    store = StateStore(settings.state_file)
    hub = BroadcastHub()
    personas = load_personas(settings.characters_dir)
    memory = AgentMemoryStore(settings.memory_file, keys=[p.key for p in personas.values()])
    prompt = load_system_prompt(settings.prompts_dir)
    agents = {
        Turn.A: PersonaAgent(personas[Turn.A], personas[Turn.B], prompt, settings.context_window),
        Turn.B: PersonaAgent(personas[Turn.B], personas[Turn.A], prompt, settings.context_window),
    }
    sources = list(chat_sources) if chat_sources is not None else build_chat_sources(settings)
    generator = ResponseGenerator(sources, timeout=settings.llm_timeout, rng=rng)

    if image_generator is None:
        client = get_image_client(settings)
        if client is not None:
            image_generator = OpenAIImageGenerator(
                client, model=settings.image_model, size=settings.image_size, quality=settings.image_quality
            )
    images = ImageSideChannel(image_generator, cooldown=settings.image_cooldown, alternate=settings.turn_image_schedule)

    manager = ConversationManager(
        store=store,
        hub=hub,
        generator=generator,
        agents=agents,
        images=images,
        memory=memory,
        max_messages=settings.max_messages,
        initial_delay=settings.initial_delay,
        min_delay=settings.turn_min_delay,
        max_delay=settings.turn_max_delay,
        rng=rng,
    )

    remote = None
    if settings.github_token:
        remote = GitHubArchiveSink(
            owner=settings.github_owner,
            repo=settings.github_repo,
            token=settings.github_token,
            client=github_client,
            timeout=settings.http_timeout,
        )
    archive = ArchiveManager(
        state_provider=lambda: manager.state,
        local=LocalArchiveSink(settings.archives_dir),
        remote=remote,
        memory=memory,
        interval=settings.archive_interval,
        cache_ttl=settings.archive_cache_ttl,
    )

    gallery = Gallery(settings.gallery_dir)
    scheduled = None
    if settings.gallery_enabled and image_generator is not None:
        scheduled = ScheduledImageGenerator(
            gallery=gallery,
            image_generator=image_generator,
            generator=generator,
            agents=agents,
            state_provider=lambda: manager.state,
            hub=hub,
            memory=memory,
            interval=settings.gallery_interval,
            download_timeout=settings.http_timeout,
            rng=rng,
        )

    return Services(
        settings=settings,
        store=store,
        hub=hub,
        memory=memory,
        personas=personas,
        agents=agents,
        generator=generator,
        images=images,
        manager=manager,
        archive=archive,
        gallery=gallery,
        scheduled_images=scheduled,
        emergency=EmergencyArchiver(archive, manager, memory),
    )


def build_router(services: Services) -> APIRouter:
    router = APIRouter(prefix="/api")
    settings = services.settings

    def require_admin(payload: Optional[AdminRequest]) -> None:
        code = payload.adminCode if payload is not None else None
        if not is_valid_admin(code, settings.admin_code):
            logger.warning("admin_rejected")
            raise HTTPException(status_code=401, detail="Unauthorized")

    @router.get("/state")
    async def get_state():
        state = services.manager.state
        body = state.to_dict()
        body["viewers"] = services.hub.viewer_count
        return body

    @router.get("/stream")
    async def stream(request: Request):
        """Server-Sent Events: message/status/viewers/reset/image events."""
        keepalive = settings.keepalive_interval

        async def event_generator():
            queue = services.hub.subscribe()
            try:
                while True:
                    if await request.is_disconnected():
                        break
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=keepalive)
                    except asyncio.TimeoutError:
                        yield KEEPALIVE
                        continue
                    yield sse_frame(event)
            except asyncio.CancelledError:
                logger.debug("viewer_stream_cancelled")
            finally:
                services.hub.unsubscribe(queue)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no", "Connection": "keep-alive"},
        )

    @router.post("/start")
    async def start(payload: Optional[AdminRequest] = None):
        require_admin(payload)
        services.manager.start()
        return {"success": True, "isRunning": True}

    @router.post("/stop")
    async def stop(payload: Optional[AdminRequest] = None):
        require_admin(payload)
        services.manager.stop()
        return {"success": True, "isRunning": False}

    @router.post("/reset")
    async def reset(payload: Optional[AdminRequest] = None):
        require_admin(payload)
        services.manager.reset()
        return {"success": True}

    @router.post("/archive")
    async def manual_archive(payload: Optional[AdminRequest] = None):
        require_admin(payload)
        result = await services.archive.archive("manual_trigger")
        return {
            "success": result.success,
            "localFilename": result.local_filename,
            "githubSuccess": result.remote_ok,
        }

    @router.get("/archives")
    async def list_archives():
        archives = await services.archive.list_archives()
        return {"archives": [a.to_dict() for a in archives]}

    @router.get("/local-archives")
    async def list_local_archives():
        return {"archives": [a.to_dict() for a in services.archive.list_local()]}

    @router.get("/archives/{filename}")
    async def get_archive(filename: str):
        doc = await services.archive.fetch_archive(filename)
        if doc is None:
            raise HTTPException(status_code=404, detail="Not found")
        return doc.to_dict(filename=filename)

    @router.get("/gallery")
    async def gallery_all():
        images = services.gallery.all()
        return {"images": [a.to_dict() for a in images], "count": len(images)}

    @router.get("/gallery/recent")
    async def gallery_recent(count: int = 10):
        images = services.gallery.recent(max(0, min(count, 100)))
        return {"images": [a.to_dict() for a in images], "count": len(images)}

    @router.get("/gallery/{image_id}")
    async def gallery_item(image_id: str):
        artifact = services.gallery.get(image_id)
        if artifact is None:
            raise HTTPException(status_code=404, detail="Not found")
        return artifact.to_dict()

    @router.get("/memory")
    async def memory_summary():
        names = {p.key: p.name for p in services.personas.values()}
        return services.memory.summary(names=names, count=5)

    @router.post("/user-chat")
    async def user_chat(payload: UserChatRequest, request: Request):
        turn = services.turn_for(payload.agent or "")
        if not payload.message or turn is None:
            raise HTTPException(status_code=400, detail="Invalid request")
        client_host = request.client.host if request.client else "unknown"
        sender = f"User-{payload.userId or f'anon-{client_host}'}"
        reply = await services.manager.chat_with(turn, sender, payload.message)
        return {
            "agent": services.personas[turn].name,
            "response": reply,
            "timestamp": int(time.time() * 1000),
        }

    return router


def create_app(services: Optional[Services] = None, run_background: bool = True) -> FastAPI:
    services = services or build_services(load_settings())
    settings = services.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_background:
            services.emergency.install_signal_handlers()
            services.emergency.install_excepthook()
            services.emergency.install_loop_handler(asyncio.get_running_loop())
            services.archive.start()
            if services.scheduled_images is not None:
                services.scheduled_images.start()
            services.manager.resume_on_boot(auto_start=settings.auto_start)
        logger.info(f"server_ready | port={settings.port} messages={len(services.manager.state.messages)}")
        try:
            yield
        finally:
            await services.manager.shutdown()
            await services.archive.stop()
            if services.scheduled_images is not None:
                await services.scheduled_images.stop()
            services.memory.save()
            if run_background:
                services.emergency.uninstall_signal_handlers()
                services.emergency.uninstall_excepthook()
            logger.info("server_stopped")

    app = FastAPI(title="Backrooms", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = services
    app.include_router(build_router(services))
    app.mount("/gallery", StaticFiles(directory=str(settings.gallery_dir), check_dir=False), name="gallery")
    return app
