from __future__ import annotations

import os
from typing import Any, Dict, Optional

import httpx
import streamlit as st
from loguru import logger


API_URL = os.getenv("BACKROOMS_API_URL", "http://localhost:3001").rstrip("/")


def api_get(path: str, **params: Any) -> Optional[Dict[str, Any]]:
    try:
        resp = httpx.get(f"{API_URL}{path}", params=params or None, timeout=30.0)
        resp.raise_for_status()
        return resp.json()
    except httpx.HTTPError as e:
        logger.warning(f"archives_page_get_failed | path={path} | {e}")
        return None


st.set_page_config(page_title="Archives", page_icon="🗄️", layout="wide")
st.title("Archives & Gallery")
st.caption("Past snapshots of the conversation, the image gallery and what each persona remembers.")

sb = st.sidebar
sb.title("Archives – Controls")
view = sb.radio("View", ["Archives", "Gallery", "Memory"], index=0)
local_only = sb.checkbox("Local archives only", value=False)

if view == "Archives":
    listing = api_get("/api/local-archives" if local_only else "/api/archives")
    archives = (listing or {}).get("archives", [])
    if not archives:
        st.info("No archives yet.")
        st.stop()
    labels = [f"{a['filename']}  ·  {a.get('source', '')}" for a in archives]
    idx = sb.selectbox("Archive", range(len(archives)), format_func=lambda i: labels[i])
    chosen = archives[idx]
    doc = api_get(f"/api/archives/{chosen['filename']}")
    if doc is None:
        st.error("Archive could not be loaded.")
        st.stop()
    c1, c2, c3 = st.columns(3)
    c1.metric("Messages", doc.get("messageCount", 0))
    c2.metric("Exchanges", doc.get("totalExchanges") or "–")
    c3.metric("Reason", doc.get("reason") or "–")
    st.caption(f"Archived at {doc.get('archivedAt') or 'unknown'} · format: {doc.get('sourceShape')}")
    for m in doc.get("messages", []):
        with st.chat_message("user" if m.get("entity") == "CLAUDE_ALPHA" else "assistant"):
            st.markdown(f"**{m.get('entity')}**\n\n{m.get('content', '')}")
            if m.get("image"):
                st.image(m["image"])

elif view == "Gallery":
    count = sb.slider("Show latest", min_value=5, max_value=50, value=10, step=5)
    data = api_get("/api/gallery/recent", count=count) or {}
    images = data.get("images", [])
    if not images:
        st.info("The gallery is empty.")
    cols = st.columns(3)
    for i, img in enumerate(images):
        with cols[i % 3]:
            src = f"{API_URL}/gallery/{img['localPath']}" if img.get("localPath") else img.get("imageUrl")
            st.image(src, caption=img.get("agent"))
            st.caption(img.get("thought", ""))
            with st.expander("Prompt & context"):
                st.write(img.get("prompt", ""))
                st.text(img.get("conversationContext", ""))

else:
    summary = api_get("/api/memory") or {}
    cols = st.columns(max(1, len(summary)))
    for col, (key, entry) in zip(cols, summary.items()):
        with col:
            st.subheader(key)
            st.caption(f"{entry.get('memoryCount', 0)} memories · {entry.get('chatTurns', 0)} visitor chats")
            for note in entry.get("recentMemories", []):
                st.markdown(f"- {note}")
