from __future__ import annotations

import json
import os
import time
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

import httpx
import streamlit as st
from loguru import logger


API_URL = os.getenv("BACKROOMS_API_URL", "http://localhost:3001").rstrip("/")
AVATARS = {"CLAUDE_ALPHA": "🟦", "CLAUDE_OMEGA": "🟩", "SYSTEM": "⬛"}


def api_get(path: str, **params: Any) -> Optional[Dict[str, Any]]:
    try:
        resp = httpx.get(f"{API_URL}{path}", params=params or None, timeout=15.0)
        resp.raise_for_status()
        return resp.json()
    except httpx.HTTPError as e:
        logger.warning(f"viewer_get_failed | path={path} | {e}")
        return None


def api_post(path: str, payload: Dict[str, Any], timeout: float = 15.0) -> httpx.Response | None:
    try:
        return httpx.post(f"{API_URL}{path}", json=payload, timeout=timeout)
    except httpx.HTTPError as e:
        logger.warning(f"viewer_post_failed | path={path} | {e}")
        return None


def follow_stream(max_seconds: float) -> Iterator[Dict[str, Any]]:
    """Yield decoded SSE events for at most ``max_seconds``."""
    deadline = time.monotonic() + max_seconds
    timeout = httpx.Timeout(10.0, read=30.0)
    with httpx.stream("GET", f"{API_URL}/api/stream", timeout=timeout) as resp:
        for line in resp.iter_lines():
            if time.monotonic() > deadline:
                return
            if not line.startswith("data:"):
                continue
            try:
                yield json.loads(line[len("data:"):].strip())
            except json.JSONDecodeError:
                continue


def fmt_ts(ms: int) -> str:
    try:
        return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")
    except (TypeError, ValueError, OSError):
        return ""


def render_message(m: Dict[str, Any]) -> None:
    entity = m.get("entity", "")
    role = "user" if entity == "CLAUDE_ALPHA" else "assistant"
    with st.chat_message(role, avatar=AVATARS.get(entity, "⬜")):
        st.markdown(
            f"**{entity}**\n\n{m.get('content', '')}\n\n"
            f"<span style='color:gray;font-size:smaller'>{fmt_ts(m.get('timestamp', 0))}</span>",
            unsafe_allow_html=True,
        )
        if m.get("image"):
            st.image(m["image"])


st.set_page_config(page_title="Backrooms Live", page_icon="🌀", layout="wide")

st.sidebar.title("Backrooms – Controls")
st.sidebar.caption(f"API: {API_URL}")
admin_code = st.sidebar.text_input("Admin code", type="password")
c1, c2, c3 = st.sidebar.columns(3)
start_btn = c1.button("Start", type="primary")
stop_btn = c2.button("Stop")
reset_btn = c3.button("Reset")
archive_btn = st.sidebar.button("Archive now")
out_box = st.sidebar.container()

for clicked, path in ((start_btn, "/api/start"), (stop_btn, "/api/stop"), (reset_btn, "/api/reset"), (archive_btn, "/api/archive")):
    if not clicked:
        continue
    resp = api_post(path, {"adminCode": admin_code})
    with out_box:
        if resp is None:
            st.error("API unreachable")
        elif resp.status_code == 401:
            st.error("Unauthorized")
        else:
            st.success(f"{path.rsplit('/', 1)[-1]}: {resp.json()}")

st.sidebar.subheader("Talk to a persona")
chat_agent = st.sidebar.radio("Persona", ["alpha", "omega"], index=0, horizontal=True)
chat_text = st.sidebar.text_area("Message", height=100, key="chat_text")
if st.sidebar.button("Send"):
    if not chat_text.strip():
        st.sidebar.warning("Write something first.")
    else:
        user_id = st.session_state.setdefault("_viewer_id", f"viewer-{int(time.time())}")
        resp = api_post("/api/user-chat", {"message": chat_text, "agent": chat_agent, "userId": user_id}, timeout=90.0)
        if resp is not None and resp.status_code == 200:
            body = resp.json()
            st.sidebar.markdown(f"**{body.get('agent')}**: {body.get('response')}")
        else:
            st.sidebar.error("Chat failed")

follow_seconds = st.sidebar.slider("Follow live for (seconds)", min_value=30, max_value=600, value=120, step=30)
follow_btn = st.sidebar.button("Follow live")

st.title("Live AI↔AI Conversation")
state = api_get("/api/state")
if state is None:
    st.error("Could not reach the backrooms server. Is it running?")
    st.stop()

status = "🟢 RUNNING" if state.get("isRunning") else "🔴 STOPPED"
m1, m2, m3, m4 = st.columns(4)
m1.metric("Status", status)
m2.metric("Exchanges", state.get("totalExchanges", 0))
m3.metric("Next turn", state.get("currentTurn", "A"))
m4.metric("Viewers", state.get("viewers", 0))

chat_area = st.container()
with chat_area:
    for m in state.get("messages", []):
        render_message(m)

if follow_btn:
    status_text = st.empty()
    status_text.info("Following the live stream…")
    try:
        for event in follow_stream(follow_seconds):
            kind = event.get("type")
            if kind == "message":
                with chat_area:
                    render_message(event.get("message", {}))
            elif kind == "status":
                status_text.info("RUNNING" if event.get("isRunning") else "STOPPED")
            elif kind == "viewers":
                status_text.info(f"{event.get('count', 0)} viewers")
            elif kind == "reset":
                status_text.warning("Conversation reset")
            elif kind == "image":
                data = event.get("data", {})
                with chat_area:
                    st.image(data.get("imageUrl"), caption=f"{data.get('agent')}: {data.get('thought', '')}")
        status_text.success("Stopped following")
    except httpx.HTTPError as e:
        status_text.error(f"Stream closed: {e}")
