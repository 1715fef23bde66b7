from fastapi import APIRouter, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from schemas.chat import Message, UploadResponse
from services.errors import ChatError, NotFound
from constants import HISTORY_LIMIT, ROOM_HISTORY_MAX_QUERY, DM_HISTORY_MAX
import os
import re
import shutil
import time
from logging_config import get_logger

logger = get_logger(__name__)

history_router = APIRouter(tags=["history"])


def safe_filename(name: str) -> str:
    name = os.path.basename(name or "file")
    return re.sub(r"\s+", "_", name) or "file"


@history_router.get("/api/rooms")
async def list_rooms(request: Request):
    store = request.app.state.chat_service.store
    try:
        rooms = await store.list_rooms()
    except Exception as e:
        logger.error(f"Error listing rooms: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to list rooms")
    return {"rooms": sorted(rooms)}


@history_router.get("/api/users/{username}")
async def user_status(username: str, request: Request):
    """Whether a user is online, plus their stored last-activity record."""
    chat_service = request.app.state.chat_service
    try:
        record = await chat_service.store.get_user(username)
    except Exception as e:
        logger.error(f"Error reading user {username}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to read user")
    if record is None:
        logger.warning(f"User {username} not found")
        raise HTTPException(status_code=404, detail="User not found")
    return {
        "username": username,
        "online": chat_service.registry.resolve(username) is not None,
        "lastActive": record.get("last_active"),
    }


@history_router.get("/api/rooms/{room}/messages", response_model=list[Message])
async def room_messages(room: str, request: Request, limit: int = Query(HISTORY_LIMIT, ge=1)):
    """Last `limit` messages of a room, oldest first."""
    limit = min(limit, ROOM_HISTORY_MAX_QUERY)
    store = request.app.state.chat_service.store
    try:
        return await store.room_history(room, limit)
    except Exception as e:
        logger.error(f"Error reading history of room {room}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to read room history")


@history_router.get("/api/dm/{a}/{b}", response_model=list[Message])
async def direct_messages(a: str, b: str, request: Request, limit: int = Query(HISTORY_LIMIT, ge=1)):
    """Direct messages between two users, oldest first. The order of a and b does not matter."""
    limit = min(limit, DM_HISTORY_MAX)
    store = request.app.state.chat_service.store
    try:
        messages = await store.dm_history(a, b, limit)
    except Exception as e:
        logger.error(f"Error reading direct messages between {a} and {b}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to read direct messages")
    logger.debug(f"Returning {len(messages)} direct messages between {a} and {b}")
    return messages


@history_router.post("/upload-file", response_model=UploadResponse)
async def upload_file(
    request: Request,
    file: UploadFile = File(None),
    room: str = Form(None),
    username: str = Form(None),
):
    if file is None or not room or not username:
        logger.warning(f"Upload rejected from {request.client.host if request.client else 'unknown'}: missing file/room/username")
        return JSONResponse(status_code=400, content={"ok": False, "message": "Missing file, room or username"})

    upload_dir = request.app.state.upload_dir
    filename = f"{int(time.time() * 1000)}-{safe_filename(file.filename)}"
    path = os.path.join(upload_dir, filename)
    try:
        with open(path, "wb") as out:
            shutil.copyfileobj(file.file, out)
    except OSError as e:
        logger.error(f"Error saving upload {filename}: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"ok": False, "message": "Failed to store file"})
    finally:
        await file.close()
    size = os.path.getsize(path)

    base_url = str(request.base_url).rstrip('/')
    url = f"{base_url}/uploads/{filename}"

    chat_service = request.app.state.chat_service
    try:
        message = await chat_service.messages.post_file_message(username, room, url, file.filename, size)
    except NotFound as e:
        os.remove(path)
        return JSONResponse(status_code=404, content={"ok": False, "message": e.message})
    except ChatError as e:
        return JSONResponse(status_code=500, content={"ok": False, "message": e.message})

    logger.info(f"{username} uploaded {file.filename} ({size} bytes) to room {room}")
    return UploadResponse(
        ok=True,
        url=url,
        filename=filename,
        original=file.filename,
        size=size,
        timestamp=message.created_at,
    )
