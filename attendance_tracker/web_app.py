import asyncio
import logging
import re
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel

from .camera import CameraStream
from .config import AUTO_START_RUNTIME, CAMERA_INDEX, DEVICE, LABELED_IMAGES_DIR, ROSTER_URL, STORE_BACKEND
from .exceptions import (
    EnrollmentError,
    EnrollmentInputError,
    EnrollmentSubmitError,
    RosterError,
    StorageError,
)
from .face_engine import FaceEngine
from .ledger import AttendanceLedger
from .roster import RosterStore, create_roster_source, validate_name
from .runtime import AttendanceRuntime
from .storage import create_store


logger = logging.getLogger("attendance_tracker.web_app")
REFERENCE_FILE_PATTERN = re.compile(r"^(\d+)\.jpg$")


class EnrollmentSubmitBody(BaseModel):
    name: str = ""


async def _mjpeg_frame_generator(runtime: AttendanceRuntime, interval: float) -> AsyncIterator[bytes]:
    while True:
        frame = runtime.get_jpeg_frame()
        if frame is None:
            await asyncio.sleep(0.05)
            continue
        yield (
            b"--frame\r\n"
            b"Content-Type: image/jpeg\r\n\r\n" + frame + b"\r\n"
        )
        await asyncio.sleep(interval)


def build_runtime(
    roster_store: RosterStore,
    camera_index: Optional[int] = None,
    roster_url: str = ROSTER_URL,
) -> AttendanceRuntime:
    source = create_roster_source(roster_url, roster_store)
    ledger = AttendanceLedger(create_store(STORE_BACKEND))
    return AttendanceRuntime(
        engine=FaceEngine(device=DEVICE),
        roster_source=source,
        ledger=ledger,
        camera=CameraStream(CAMERA_INDEX if camera_index is None else int(camera_index)),
    )


def create_web_app(
    runtime: Optional[AttendanceRuntime] = None,
    roster_store: Optional[RosterStore] = None,
    camera_index: Optional[int] = None,
    auto_start: bool = AUTO_START_RUNTIME,
) -> FastAPI:
    roster_store = roster_store or RosterStore(LABELED_IMAGES_DIR)
    if runtime is None:
        runtime = build_runtime(roster_store, camera_index=camera_index)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if auto_start:
            try:
                await runtime.start()
            except Exception as exc:
                runtime.last_error = f"Runtime startup failed: {exc}"
                logger.exception("Attendance runtime startup failed")
        yield
        await runtime.stop()

    app = FastAPI(title="Attendance Tracker", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.runtime = runtime
    app.state.roster_store = roster_store

    # Roster store interface.

    @app.get("/known-names")
    def known_names():
        try:
            return roster_store.known_names()
        except RosterError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    @app.post("/register")
    async def register(name: str = Form(""), image: Optional[UploadFile] = File(None)):
        if image is None:
            return PlainTextResponse("No file uploaded.", status_code=400)
        payload = await image.read()
        if not payload:
            return PlainTextResponse("No file uploaded.", status_code=400)
        try:
            cleaned = validate_name(name)
        except RosterError as exc:
            return PlainTextResponse(str(exc), status_code=400)

        try:
            await asyncio.to_thread(roster_store.register, cleaned, payload)
        except RosterError as exc:
            logger.error("Register failed: %s", exc)
            return PlainTextResponse(str(exc), status_code=500)
        return PlainTextResponse("Saved successfully")

    @app.get("/labeled_images/{name}/{filename}")
    def reference_image(name: str, filename: str):
        found = REFERENCE_FILE_PATTERN.match(filename)
        if found is None:
            raise HTTPException(status_code=404, detail="Not found.")
        try:
            path = roster_store.reference_path(name, int(found.group(1)))
        except RosterError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        if not path.is_file():
            raise HTTPException(status_code=404, detail="Not found.")
        return FileResponse(path, media_type="image/jpeg")

    # Operator actions.

    @app.get("/api/state")
    async def state():
        return JSONResponse(runtime.get_state())

    @app.get("/api/stream")
    def stream():
        return StreamingResponse(
            _mjpeg_frame_generator(runtime, interval=runtime.poll_interval),
            media_type="multipart/x-mixed-replace; boundary=frame",
        )

    @app.post("/api/attendance/clear")
    async def clear_attendance():
        try:
            runtime.clear_attendance()
        except StorageError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"ok": True}

    @app.get("/api/absentees")
    async def absentees():
        names = runtime.absentees()
        return {"absent": names, "everyone_present": not names}

    @app.get("/api/report")
    async def report():
        filename, text = runtime.report()
        return PlainTextResponse(
            text,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/enrollment/submit")
    async def submit_enrollment(payload: EnrollmentSubmitBody):
        try:
            name = await runtime.submit_enrollment(payload.name)
        except EnrollmentInputError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except EnrollmentSubmitError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        except EnrollmentError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"ok": True, "name": name}

    @app.post("/api/enrollment/cancel")
    async def cancel_enrollment():
        return {"ok": True, "cancelled": runtime.cancel_enrollment()}

    @app.post("/api/camera/retry")
    async def retry_camera():
        started = await runtime.start_camera()
        if not started:
            raise HTTPException(status_code=503, detail=runtime.fatal_error or "Camera unavailable.")
        return {"ok": True, "status": runtime.status}

    return app
