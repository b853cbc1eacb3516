"""
Connect Card Scanner — main.py
Staff photograph paper connect cards; each accepted card joins a background
queue that uploads, extracts, de-duplicates and saves it while scanning continues.
Streamlit UI. Pipeline lives in card_queue.py, services in card_services.py.

Run with: uv run streamlit run main.py
"""

import asyncio
import logging
import queue
import threading
from pathlib import Path

import streamlit as st

from capture import make_captured_image
from card_queue import QueueManager
from errors import CardPipelineError, is_retryable
from queue_stats import COMPLETE, DUPLICATE, EXTRACTING, FAILED, PENDING, SAVING, UPLOADING, compute_stats, format_session_summary
from session_store import CARD_TYPES, DOUBLE, SINGLE, SessionStore, SessionTracker
from settings import CONFIG, location_name, setup_logging

# ---------------------------------------------------------------------------
# LOGGING / DIRECTORY SETUP
# ---------------------------------------------------------------------------

setup_logging(CONFIG)
Path(CONFIG["session"]["storage_dir"]).mkdir(parents=True, exist_ok=True)

# ---------------------------------------------------------------------------
# PIPELINE HOST
# ---------------------------------------------------------------------------


class PipelineRunner:
    """Hosts the QueueManager on its own event loop thread.

    Streamlit reruns the script on every interaction, so the page never
    touches the manager directly: everything goes through call(), which
    runs on the pipeline loop and hands back the result (or the exception).
    """

    def __init__(self, config):
        self.config = config
        self.events = queue.Queue()
        self.tracker = SessionTracker(
            SessionStore.from_config(config),
            location_id=config["organization"]["default_location_id"],
        )
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self.thread.start()
        self.manager = self.call(self._start_manager)
        logging.info("Pipeline loop started")

    def _start_manager(self):
        manager = QueueManager(self.config, self.tracker)
        manager.subscribe(self.events.put)
        manager.start()
        return manager

    def call(self, fn, *args, **kwargs):
        async def _invoke():
            return fn(*args, **kwargs)

        return asyncio.run_coroutine_threadsafe(_invoke(), self.loop).result(timeout=10)

    def drain_events(self):
        events = []
        while True:
            try:
                events.append(self.events.get_nowait())
            except queue.Empty:
                return events


# ---------------------------------------------------------------------------
# PAGE STATE
# ---------------------------------------------------------------------------

SETUP = "SETUP"
CAPTURE_FRONT = "CAPTURE_FRONT"
CAPTURE_BACK = "CAPTURE_BACK"
SUMMARY = "SUMMARY"


def init_session_state():
    defaults = {
        "step": SETUP,
        "capture_round": 0,
        "pending_front": None,
        "final_summary": None,
    }
    for k, v in defaults.items():
        if k not in st.session_state:
            st.session_state[k] = v
    if "runner" not in st.session_state:
        st.session_state.runner = PipelineRunner(CONFIG)


def transition_to(new_step):
    old = st.session_state.step
    st.session_state.step = new_step
    logging.info(f"Step: {old} -> {new_step}")
    if new_step in (SETUP, CAPTURE_FRONT):
        st.session_state.pending_front = None
    st.session_state.capture_round += 1


# ---------------------------------------------------------------------------
# STATUS DISPLAY
# ---------------------------------------------------------------------------

STATUS_DISPLAY = {
    PENDING: ("⏳", "Waiting", "#64748b"),
    UPLOADING: ("⬆️", "Uploading", "#3b82f6"),
    EXTRACTING: ("🔍", "Reading card", "#3b82f6"),
    SAVING: ("💾", "Saving", "#3b82f6"),
    COMPLETE: ("✅", "Saved", "#16a34a"),
    DUPLICATE: ("♻️", "Already scanned", "#ca8a04"),
    FAILED: ("❌", "Failed", "#dc2626"),
}

TOASTS = {
    COMPLETE: ("Card saved", "✅"),
    DUPLICATE: ("Duplicate card skipped", "♻️"),
    FAILED: ("Card failed", "❌"),
}


def show_toasts(runner):
    for event in runner.drain_events():
        if not event.settled:
            continue
        text, icon = TOASTS[event.status]
        if event.error:
            text = f"{text}: {event.error}"
        st.toast(text, icon=icon)


def run_action(runner, fn, *args):
    try:
        return runner.call(fn, *args)
    except CardPipelineError as exc:
        st.warning(exc.message)
        return None


# ---------------------------------------------------------------------------
# RECOVERY
# ---------------------------------------------------------------------------


def render_recovery_prompt(runner):
    stale = runner.tracker.recovered
    st.subheader("Unfinished scanning session")
    st.write(
        f"{stale.cards_scanned} {stale.card_type}-sided card(s) were scanned at "
        f"**{location_name(CONFIG, stale.location_id)}**"
        + (f" into batch **{stale.batch_name}**" if stale.batch_name else "")
        + "."
    )
    unsettled = sum(1 for data in stale.items if data.get("status") not in (COMPLETE, DUPLICATE))
    if unsettled:
        st.warning(
            f"{unsettled} card(s) had not finished processing. Resuming brings them back as failed; "
            "remove them and scan those cards again."
        )
    col_resume, col_discard = st.columns(2)
    if col_resume.button("Resume session", type="primary", use_container_width=True):
        runner.call(runner.manager.resume_session)
        transition_to(CAPTURE_FRONT)
        st.rerun()
    if col_discard.button("Discard and start fresh", use_container_width=True):
        runner.call(runner.tracker.discard)
        transition_to(SETUP)
        st.rerun()


# ---------------------------------------------------------------------------
# SETUP / CAPTURE
# ---------------------------------------------------------------------------


def render_setup(runner):
    st.subheader("Ready to scan cards")
    tracker = runner.tracker
    locations = CONFIG["organization"].get("locations", [])
    location_ids = [loc["id"] for loc in locations] or [tracker.location_id]

    card_type = st.radio(
        "Card type",
        CARD_TYPES,
        index=CARD_TYPES.index(tracker.card_type),
        format_func=lambda t: "Single-sided" if t == SINGLE else "Two-sided (front and back)",
        horizontal=True,
    )
    location_id = st.selectbox(
        "Location",
        location_ids,
        index=location_ids.index(tracker.location_id) if tracker.location_id in location_ids else 0,
        format_func=lambda loc: location_name(CONFIG, loc),
    )
    if st.button("Start scanning", type="primary", use_container_width=True):
        runner.call(tracker.configure, card_type, location_id)
        transition_to(CAPTURE_FRONT)
        st.rerun()


def render_capture(runner):
    tracker = runner.tracker
    side = "back" if st.session_state.step == CAPTURE_BACK else "front"
    st.caption(
        f"{location_name(CONFIG, tracker.location_id)} · "
        f"{'two-sided' if tracker.card_type == DOUBLE else 'single-sided'} cards"
    )

    photo = st.camera_input(f"Capture card {side}", key=f"camera_{st.session_state.capture_round}")
    if photo is None:
        return

    image = make_captured_image(photo.getvalue(), CONFIG, photo.type or None)
    col_accept, col_retake = st.columns(2)
    if col_retake.button("Retake", use_container_width=True):
        st.session_state.capture_round += 1
        st.rerun()
    if not col_accept.button("Accept", type="primary", use_container_width=True):
        return

    if side == "front" and tracker.card_type == DOUBLE:
        st.session_state.pending_front = image
        transition_to(CAPTURE_BACK)
        st.rerun()

    front = st.session_state.pending_front if side == "back" else image
    back = image if side == "back" else None
    if run_action(runner, runner.manager.add_card, front, back) is not None:
        st.toast("Card queued - keep scanning!", icon="📇")
    transition_to(CAPTURE_FRONT)
    st.rerun()


# ---------------------------------------------------------------------------
# QUEUE DRAWER
# ---------------------------------------------------------------------------


def render_item(runner, item, position):
    icon, label, color = STATUS_DISPLAY[item.status]
    col_thumb, col_info, col_actions = st.columns([1, 3, 2])

    if item.front_image.preview:
        col_thumb.markdown(
            f'<img src="{item.front_image.preview}" style="width:100%;border-radius:0.5rem;">',
            unsafe_allow_html=True,
        )

    col_info.markdown(f"**Card {position}** <span style='color:{color}'>{icon} {label}</span>", unsafe_allow_html=True)
    if item.in_flight:
        col_info.progress(item.progress)
    if item.error:
        col_info.caption(item.error)
    if item.validation_issues:
        col_info.caption(f"{len(item.validation_issues)} field(s) flagged for review")

    if item.status == FAILED and not item.front_image.released:
        retry_label = "Retry" if is_retryable(item.error_kind) else "Retry anyway"
        if col_actions.button(retry_label, key=f"retry_{item.id}"):
            run_action(runner, runner.manager.retry, item.id)
    if item.status in (FAILED, DUPLICATE):
        if col_actions.button("Remove", key=f"remove_{item.id}"):
            run_action(runner, runner.manager.remove, item.id)


@st.fragment(run_every=CONFIG["ui"]["refresh_seconds"])
def render_queue_panel(runner):
    show_toasts(runner)
    items = runner.call(runner.manager.snapshot)
    stats = compute_stats(items)

    cols = st.columns(4)
    cols[0].metric("Waiting", stats.pending)
    cols[1].metric("Processing", stats.processing)
    cols[2].metric("Saved", stats.complete)
    cols[3].metric("Failed / duplicate", f"{stats.failed} / {stats.duplicate}")

    session = runner.tracker.session
    if session is not None:
        batch = f" · batch {session.batch_name}" if session.batch_name else ""
        st.caption(f"{session.cards_scanned} card(s) scanned this session{batch}")

    with st.expander(f"Queue ({stats.total})", expanded=stats.failed > 0):
        for position, item in enumerate(items, start=1):
            render_item(runner, item, position)

    if CONFIG["ui"]["show_debug"]:
        st.code("\n".join(f"{i.short_id} {i.status} retries={i.retry_count}" for i in items) or "(empty)")

    if session is not None and st.button(
        "Finish batch",
        disabled=not stats.can_finish,
        help=None if stats.can_finish else "Wait for the queue to finish processing",
        use_container_width=True,
    ):
        finished = runner.call(runner.tracker.finish)
        runner.call(runner.manager.reset)
        st.session_state.final_summary = (stats, finished)
        transition_to(SUMMARY)
        st.rerun(scope="app")


# ---------------------------------------------------------------------------
# SUMMARY
# ---------------------------------------------------------------------------


def render_summary():
    stats, finished = st.session_state.final_summary
    st.subheader("Scanning session complete")
    st.write(format_session_summary(stats, finished.cards_scanned if finished else None))
    if finished is not None and finished.batch_name:
        st.info(f"Cards are waiting for review in batch **{finished.batch_name}**.")
    if st.button("Scan another batch", type="primary"):
        st.session_state.final_summary = None
        transition_to(SETUP)
        st.rerun()


# ---------------------------------------------------------------------------
# STREAMLIT UI
# ---------------------------------------------------------------------------


def run_app():
    st.set_page_config(
        page_title="Connect Card Scanner",
        page_icon="📇",
        layout="centered",
    )
    init_session_state()
    runner = st.session_state.runner

    st.title("Scan connect cards")

    if runner.tracker.needs_decision:
        render_recovery_prompt(runner)
        return

    step = st.session_state.step
    if step == SUMMARY:
        render_summary()
        return
    if step == SETUP:
        render_setup(runner)
    else:
        render_capture(runner)

    render_queue_panel(runner)


if __name__ == "__main__":
    run_app()
