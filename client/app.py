import json
import logging
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path

import streamlit as st
from websocket import create_connection


def setup_client_logging() -> logging.Logger:
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("relaybot.console")
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "console.log", maxBytes=2_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    return logger


LOGGER = setup_client_logging()


def ws_reply(ws_url: str, session_id: str, message: str) -> tuple[str | None, str | None]:
    """Send one message to the relay's /ws/chat endpoint.

    Returns (reply, model). reply is None when the relay skipped the message.
    """
    LOGGER.info("Connecting ws_url=%s session_id=%s", ws_url, session_id)
    ws = create_connection(ws_url, timeout=120)
    try:
        ws.send(
            json.dumps(
                {
                    "session_id": session_id,
                    "message": message,
                    "message_id": uuid.uuid4().hex,
                }
            )
        )
        reply = None
        while True:
            payload = json.loads(ws.recv())
            t = payload.get("type")
            if t == "reply":
                reply = payload.get("data") or ""
            elif t == "skipped":
                reply = None
            elif t == "done":
                LOGGER.info(
                    "WS done session_id=%s model=%s",
                    payload.get("session_id"),
                    payload.get("model"),
                )
                return reply, payload.get("model")
            elif t == "error":
                err = payload.get("data") or "Unknown error"
                LOGGER.error("WS error: %s", err)
                raise RuntimeError(err)
    finally:
        ws.close()


st.set_page_config(page_title="Relay Bot Console", page_icon="💬", layout="centered")

st.title("Relay Bot Console")

with st.sidebar:
    st.subheader("Connection")
    default_ws = "ws://localhost:3000/ws/chat"
    ws_url = st.text_input("WebSocket URL", value=default_ws)
    session_id = st.text_input("Conversation ID", value=st.session_state.get("session_id", "console"))
    st.session_state["session_id"] = session_id
    model_caption = st.empty()
    st.markdown("---")
    if st.button("Clear chat"):
        st.session_state["messages"] = []

if "messages" not in st.session_state:
    st.session_state["messages"] = []

for m in st.session_state["messages"]:
    with st.chat_message(m["role"]):
        st.markdown(m["content"])

if st.session_state.get("model"):
    model_caption.caption(f"Bound model: {st.session_state['model']}")

prompt = st.chat_input("Say something…")
if prompt:
    st.session_state["messages"].append({"role": "user", "content": prompt})
    with st.chat_message("user"):
        st.markdown(prompt)

    with st.chat_message("assistant"):
        try:
            reply, model = ws_reply(ws_url, session_id, prompt)
            st.session_state["model"] = model
            full = reply if reply is not None else "_(message skipped)_"
            st.markdown(full)
        except Exception as e:
            full = f"Error: {e}"
            st.error(full)

    st.session_state["messages"].append({"role": "assistant", "content": full})
