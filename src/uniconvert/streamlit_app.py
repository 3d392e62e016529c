import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import requests
import streamlit as st

API_BASE = os.getenv("UNICONVERT_API_BASE", os.getenv("API_BASE", "http://localhost:3000")).rstrip("/")
# conversions are slow; stay above the relay's own polling budget (~9.5 min worst case)
CLIENT_TIMEOUT_SEC = float(os.getenv("UNICONVERT_CLIENT_TIMEOUT_SEC", "600"))
SHOW_HEALTH = os.getenv("UNICONVERT_UI_SHOW_HEALTH", "true").lower() in {"1", "true", "yes", "on"}

OUTPUT_FORMATS: dict[str, str] = {
    "pdf": "PDF",
    "docx": "DOCX (Word)",
    "xlsx": "XLSX (Excel)",
    "pptx": "PPTX (PowerPoint)",
    "jpg": "JPG (Image)",
    "png": "PNG (Image)",
    "webp": "WebP (Image)",
    "mp4": "MP4 (Video)",
    "mp3": "MP3 (Audio)",
    "txt": "TXT (Text)",
    "html": "HTML",
}

NETWORK_ERROR = "Network error or server is unreachable. Please check your connection."


class UploadedFile(Protocol):
    name: str
    type: str | None

    def getvalue(self) -> bytes:
        ...


@dataclass
class ConversionOutcome:
    ok: bool
    message: str
    filename: str | None = None
    content: bytes | None = None
    content_type: str | None = None


def download_filename(original_name: str, output_format: str) -> str:
    """`report.docx` + `pdf` -> `report.pdf`."""
    stem = Path(original_name).stem or "converted"
    return f"{stem}.{output_format}"


def _error_message(resp: requests.Response) -> str:
    # The body is binary on success but JSON on error: decode then parse
    try:
        data = json.loads(resp.content.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return f"Error occurred (Status: {resp.status_code}). Could not read error details."
    if isinstance(data, dict):
        return f"Error: {data.get('message') or 'Unknown server error.'}"
    return f"Error occurred (Status: {resp.status_code})."


def submit_conversion(uploaded: UploadedFile | None, output_format: str) -> ConversionOutcome:
    """POST the file to the relay and classify the outcome. Never raises."""
    if uploaded is None:
        return ConversionOutcome(ok=False, message="Please select a file.")
    try:
        files = {"file": (uploaded.name, uploaded.getvalue(), uploaded.type or "application/octet-stream")}
        resp = requests.post(
            f"{API_BASE}/convertFile",
            files=files,
            data={"outputFormat": output_format},
            timeout=CLIENT_TIMEOUT_SEC,
        )
    except (requests.ConnectionError, requests.Timeout):
        return ConversionOutcome(ok=False, message=NETWORK_ERROR)
    except Exception as e:
        return ConversionOutcome(ok=False, message=f"An unexpected client-side error occurred: {e}")

    if resp.status_code >= 400:
        return ConversionOutcome(ok=False, message=_error_message(resp))

    return ConversionOutcome(
        ok=True,
        message="File converted successfully!",
        filename=download_filename(uploaded.name, output_format),
        content=resp.content,
        content_type=resp.headers.get("Content-Type", "application/octet-stream"),
    )


def fetch_health() -> dict[str, str] | None:
    try:
        resp = requests.get(f"{API_BASE}/api/health", timeout=5)
    except requests.RequestException:
        return None
    if resp.status_code != 200:
        return None
    return resp.json()


def _reset_state():
    for key in ["result", "error", "notice"]:
        if key in st.session_state:
            del st.session_state[key]
    # Bump the uploader key to clear any previously uploaded file widget state
    if "upload_key" in st.session_state:
        st.session_state["upload_key"] += 1
    else:
        st.session_state["upload_key"] = 1


def main() -> None:
    st.set_page_config(page_title="File Converter", page_icon="🔄", layout="centered")
    st.title("🔄 File Converter")
    st.caption("Convert documents, images, audio and video. Just upload and convert!")

    if SHOW_HEALTH:
        health = fetch_health()
        if health:
            st.caption(f"API: {API_BASE} · {health.get('status', 'unknown')}")
        else:
            st.caption(f"API: {API_BASE} · unreachable")

    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    uploaded = st.file_uploader(
        "Choose or drag a file here",
        key=f"uploader-{st.session_state['upload_key']}",
    )
    output_format = st.selectbox(
        "Convert to:",
        options=list(OUTPUT_FORMATS),
        format_func=lambda v: OUTPUT_FORMATS[v],
    )

    if st.button("Convert File", type="primary", disabled=uploaded is None):
        st.session_state.pop("error", None)
        with st.spinner("Converting file, please wait..."):
            outcome = submit_conversion(uploaded, output_format)
        if outcome.ok:
            _reset_state()
            st.session_state["result"] = outcome
            st.rerun()
        else:
            st.session_state["error"] = outcome.message

    if result := st.session_state.get("result"):
        st.success(result.message)
        st.download_button(
            label=f"Download {result.filename}",
            data=result.content,
            file_name=result.filename,
            mime=result.content_type,
        )

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()
