# apps/rma_ui/main.py
import asyncio
import logging
from datetime import datetime

import streamlit as st

# --- 1. Page Config ---
st.set_page_config(layout="wide", page_title="RMA Management")

from apps.common.pipeline_loader import build_extraction_client, build_store, get_settings, new_session
from apps.rma_ui.adapters import (
    FIELD_LABELS,
    SLOT_LABELS,
    SOURCE_OPTIONS,
    is_edit,
    raw_from_upload,
    records_frame,
    upload_token,
)
from services.capture.sources import read_system_clipboard
from services.export.xlsx_encoder import XLSX_MIME_TYPE, encode, export_filename
from services.extraction.errors import ExtractionError
from services.ingestion.normalizer import UnsupportedImageFormat
from services.ingestion.payload import ImagePayload
from services.pipeline import PipelineError
from services.records.domain import DEFECT_CATEGORIES, IMAGE_SLOTS, RECORD_FIELDS
from services.records.store import search_records
from services.validation.schema_validation import RecordValidationError

SETTINGS = get_settings()
logging.basicConfig(level=SETTINGS.log_level)


# --- Helper Functions ---
@st.cache_resource
def get_store():
    return build_store(SETTINGS)


@st.cache_resource
def get_extractor():
    return build_extraction_client(SETTINGS)


def open_form(editing=None):
    st.session_state.session = new_session(SETTINGS, get_extractor(), editing=editing)
    st.session_state.processed = {}
    st.session_state.form_rev = st.session_state.get("form_rev", 0) + 1


def close_form():
    st.session_state.pop("session", None)


def run_capture(session, slot, raw):
    try:
        outcome = asyncio.run(session.capture(slot, raw))
    except UnsupportedImageFormat as e:
        st.error(f"Unsupported image: {e}")
        return
    if outcome.error is not None:
        st.warning(f"Auto-fill failed for {SLOT_LABELS[slot]}: {outcome.error}")
    elif outcome.written:
        st.toast(f"Auto-filled: {', '.join(FIELD_LABELS[f] for f in outcome.written)}")
    st.session_state.form_rev += 1


store = get_store()
st.title("RMA Management")
st.caption("Quality Assurance Protocol")

# --- Dashboard ---
if "session" not in st.session_state:
    records = store.list()
    query = st.sidebar.text_input("Search records", "")
    shown = search_records(records, query)

    col_add, col_export, _ = st.columns([1, 2, 5])
    with col_add:
        st.button("+ Add Row", on_click=open_form, type="primary")
    with col_export:
        st.download_button(
            "Download Canvas (+Photos)",
            data=encode(records),
            file_name=export_filename(datetime.now()),
            mime=XLSX_MIME_TYPE,
        )

    st.dataframe(records_frame(shown), width="stretch", hide_index=True)

    if shown:
        pick = st.selectbox("Review record", [r.id for r in shown])
        st.button("Review", on_click=open_form, args=(store.get(pick),))
    st.stop()

# --- Capture Form ---
session = st.session_state.session
draft = session.draft
rev = st.session_state.form_rev

st.subheader(f"Reviewing NO. {session.editing.id}" if session.editing else "Create New RMA Entry")

st.markdown("### Visual Evidence")
cols = st.columns(len(IMAGE_SLOTS))
for col, slot in zip(cols, IMAGE_SLOTS):
    with col:
        st.markdown(f"**{SLOT_LABELS[slot]}**")
        if draft.images.get(slot):
            st.image(ImagePayload.from_data_url(draft.images[slot]).data, width="stretch")
            if st.button("Remove image", key=f"rm_{slot}_{rev}"):
                session.clear_image(slot)
                st.session_state.form_rev += 1
                st.rerun()

        uploaded = st.file_uploader("Choose file", type=None, key=f"up_{slot}_{rev}")
        if uploaded is not None and st.session_state.processed.get(slot) != upload_token(uploaded):
            st.session_state.processed[slot] = upload_token(uploaded)
            raw = raw_from_upload(uploaded)
            if raw is not None:
                with st.spinner("Extracting..."):
                    run_capture(session, slot, raw)
                st.rerun()

        if st.toggle("Use camera", key=f"camtoggle_{slot}"):
            shot = st.camera_input("Align the label inside the frame", key=f"cam_{slot}_{rev}")
            if shot is not None and st.session_state.processed.get(f"cam_{slot}") != upload_token(shot):
                st.session_state.processed[f"cam_{slot}"] = upload_token(shot)
                with st.spinner("Extracting..."):
                    run_capture(session, slot, raw_from_upload(shot, camera=True))
                st.rerun()

        if st.button("Paste from clipboard", key=f"paste_{slot}_{rev}"):
            items = read_system_clipboard()
            if not items:
                st.info("Clipboard has no image.")
            else:
                with st.spinner("Extracting..."):
                    outcomes = asyncio.run(session.capture_clipboard(slot, items))
                if not outcomes:
                    st.error("Unsupported image: nothing on the clipboard could be decoded.")
                else:
                    st.session_state.form_rev += 1
                    if any(o.error for o in outcomes):
                        st.warning("Auto-fill failed for a pasted image.")
                    st.rerun()

st.markdown("### Case Metadata")
with st.container():
    grid = st.columns(4)
    for i, name in enumerate(RECORD_FIELDS):
        if name in ("defect_description", "remark"):
            continue
        with grid[i % 4]:
            current = draft.get(name)
            if name in ("customer_country", "customer"):
                st.text_input(FIELD_LABELS[name], value=current, disabled=True, key=f"{name}_{rev}")
                continue
            if name == "source":
                idx = SOURCE_OPTIONS.index(current) if current in SOURCE_OPTIONS else 0
                value = st.selectbox(FIELD_LABELS[name], SOURCE_OPTIONS, index=idx, key=f"{name}_{rev}")
            else:
                value = st.text_input(FIELD_LABELS[name], value=current, key=f"{name}_{rev}")
            if is_edit(value, current):
                draft.set_field(name, value)

    options = [""] + list(DEFECT_CATEGORIES) + ["Other"]
    current = draft.get("defect_description")
    if current and current not in options:
        options.append(current)
    value = st.selectbox(
        FIELD_LABELS["defect_description"], options, index=options.index(current), key=f"defect_{rev}"
    )
    if is_edit(value, current):
        draft.set_field("defect_description", value)

    if st.button("Detailed AI Analysis"):
        try:
            with st.spinner("Analyzing..."):
                asyncio.run(session.request_defect_analysis())
            st.session_state.form_rev += 1
            st.toast("Professional AI analysis added to Remarks section.")
            st.rerun()
        except PipelineError as e:
            st.warning(str(e))
        except ExtractionError as e:
            st.error(f"Failed to get AI suggestion. Check API key or connection. ({e})")

    remark = st.text_area(FIELD_LABELS["remark"], value=draft.get("remark"), height=120, key=f"remark_{rev}")
    if is_edit(remark, draft.get("remark")):
        draft.set_field("remark", remark)

col_cancel, col_save, _ = st.columns([1, 1, 6])
with col_cancel:
    st.button("Cancel", on_click=close_form)
with col_save:
    if st.button("Update Record" if session.editing else "Save RMA Record", type="primary"):
        try:
            saved = session.commit(store)
        except RecordValidationError as e:
            st.error(f"Cannot save: {e}")
        except OSError as e:
            st.error(f"An error occurred while saving. Please try again. ({e})")
        else:
            st.toast(f"Saved NO. {saved.id}")
            close_form()
            st.rerun()
