import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from pydantic import BaseModel
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool

import config
from auth import require_user
from database import create_document, get_db, get_documents, utcnow
from errors import ApiError
from schemas import Song as SongSchema
from storage import CloudinaryStorage, StorageError

logger = logging.getLogger(__name__)

LIST_LIMIT = 100
TOP_SONGS = 5

router = APIRouter()


class SongOut(BaseModel):
    id: str
    title: str
    artist: str
    url: str
    thumbnail: Optional[str] = None
    duration: int = 0
    size: int = 0
    format: Optional[str] = None
    plays: int = 0
    user_email: Optional[str] = None
    created_at: Optional[datetime] = None


class StatsOut(BaseModel):
    total_songs: int
    total_plays: int
    total_size: int
    total_duration: int
    top_songs: List[SongOut]


def song_out(doc: Dict[str, Any]) -> SongOut:
    return SongOut(
        id=str(doc.get("_id")),
        title=doc.get("title") or "Untitled",
        artist=doc.get("artist") or "Unknown Artist",
        url=doc.get("url") or "",
        thumbnail=doc.get("thumbnail"),
        duration=doc.get("duration") or 0,
        size=doc.get("size") or 0,
        format=doc.get("format"),
        plays=doc.get("plays", 0),
        user_email=doc.get("user_email"),
        created_at=doc.get("created_at"),
    )


def demo_songs(email: Optional[str]) -> List[SongOut]:
    base = "https://res.cloudinary.com/dchyewou4"
    now = utcnow()
    return [
        SongOut(
            id="demo1",
            title="Ambient Dreams",
            artist="AI Music Player",
            url=f"{base}/video/upload/v1691012341/ai-music-player/demo1.mp3",
            thumbnail=f"{base}/image/upload/v1691012341/ai-music-player/waveform1.jpg",
            duration=183,
            size=4200000,
            format="mp3",
            user_email=email,
            created_at=now,
        ),
        SongOut(
            id="demo2",
            title="Electronic Pulse",
            artist="Demo Track",
            url=f"{base}/video/upload/v1691012342/ai-music-player/demo2.mp3",
            thumbnail=f"{base}/image/upload/v1691012342/ai-music-player/waveform2.jpg",
            duration=210,
            size=5100000,
            format="mp3",
            user_email=email,
            created_at=now,
        ),
    ]


def get_storage(request: Request) -> CloudinaryStorage:
    return request.app.state.storage


def owner_scope(request: Request, owner: Optional[str]) -> Dict[str, Any]:
    """Gated apps only ever see the caller's own tracks."""
    if request.app.state.require_auth:
        return {"user_email": owner}
    return {}


def song_filter(request: Request, owner: Optional[str], song_id: str) -> Dict[str, Any]:
    if not ObjectId.is_valid(song_id):
        raise ApiError(404, "Song not found")
    return {"_id": ObjectId(song_id), **owner_scope(request, owner)}


@router.get("/songs", response_model=List[SongOut])
def list_songs(request: Request, db: Database = Depends(get_db), owner: Optional[str] = Depends(require_user)):
    docs = db["song"].find(owner_scope(request, owner)).sort("created_at", DESCENDING).limit(LIST_LIMIT)
    items = [song_out(d) for d in docs]
    if not items and request.app.state.require_auth:
        return demo_songs(owner)
    return items


@router.get("/songs/{song_id}", response_model=SongOut)
def get_song(song_id: str, request: Request, db: Database = Depends(get_db), owner: Optional[str] = Depends(require_user)):
    doc = db["song"].find_one(song_filter(request, owner, song_id))
    if not doc:
        raise ApiError(404, "Song not found")
    return song_out(doc)


@router.post("/upload")
async def upload_song(
    audio: Optional[UploadFile] = File(None),
    title: Optional[str] = Form(None),
    artist: Optional[str] = Form(None),
    db: Database = Depends(get_db),
    storage: CloudinaryStorage = Depends(get_storage),
    owner: Optional[str] = Depends(require_user),
):
    if audio is None or not audio.filename:
        raise ApiError(400, "Please select an audio file")
    if audio.content_type not in config.ALLOWED_AUDIO_TYPES:
        logger.warning("Rejected upload with type %s", audio.content_type)
        raise ApiError(400, "Invalid file type. Only audio files allowed.")

    if audio.size is not None and audio.size > config.MAX_UPLOAD_BYTES:
        raise ApiError(400, "File too large (max 100MB)")

    data = await audio.read()
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise ApiError(400, "File too large (max 100MB)")

    title = (title or "").strip() or "New Song"
    artist = (artist or "").strip() or "Unknown Artist"
    logger.info("Uploading: %s by %s (%.2f MB)", title, artist, len(data) / 1024 / 1024)

    try:
        result = await run_in_threadpool(storage.upload, data, audio.filename)
    except StorageError as e:
        raise ApiError(502, "Cloud storage error. Please try again.") from e

    song_doc = SongSchema(
        title=title,
        artist=artist,
        cloudinary_id=result["public_id"],
        url=result["secure_url"],
        user_email=owner,
        duration=round(result.get("duration") or 0),
        size=result.get("bytes") or len(data),
        format=result.get("format"),
        thumbnail=storage.thumbnail_url(result["public_id"]),
        plays=0,
    )
    song_id = await run_in_threadpool(create_document, "song", song_doc, database=db)

    logger.info("Song uploaded: %s", title)
    return {
        "success": True,
        "message": "Song uploaded successfully!",
        "song": {
            "id": song_id,
            "title": song_doc.title,
            "artist": song_doc.artist,
            "url": song_doc.url,
            "thumbnail": song_doc.thumbnail,
            "duration": song_doc.duration,
            "size": song_doc.size,
        },
    }


@router.delete("/songs/{song_id}")
def delete_song(
    song_id: str,
    request: Request,
    db: Database = Depends(get_db),
    storage: CloudinaryStorage = Depends(get_storage),
    owner: Optional[str] = Depends(require_user),
):
    query = song_filter(request, owner, song_id)
    song = db["song"].find_one(query)
    if not song:
        raise ApiError(404, "Song not found")

    if song.get("cloudinary_id"):
        try:
            storage.delete(song["cloudinary_id"])
        except StorageError as e:
            # the song row is removed even when the asset is not
            logger.error("Cloudinary delete error for %s: %s", song["cloudinary_id"], e)

    db["song"].delete_one({"_id": song["_id"]})
    logger.info("Song deleted: %s", song.get("title"))
    return {"success": True, "message": "Song deleted successfully"}


@router.post("/songs/{song_id}/play")
def play_song(song_id: str, request: Request, db: Database = Depends(get_db), owner: Optional[str] = Depends(require_user)):
    doc = db["song"].find_one_and_update(
        song_filter(request, owner, song_id),
        {"$inc": {"plays": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise ApiError(404, "Song not found")
    return {"success": True, "plays": doc.get("plays", 0)}


@router.get("/search", response_model=List[SongOut])
def search_songs(
    request: Request,
    q: str = Query("", max_length=200),
    db: Database = Depends(get_db),
    owner: Optional[str] = Depends(require_user),
):
    q = q.strip()
    if not q:
        raise ApiError(400, "Search query is required")
    pattern = {"$regex": re.escape(q), "$options": "i"}
    query = {"$or": [{"title": pattern}, {"artist": pattern}], **owner_scope(request, owner)}
    docs = db["song"].find(query).sort("created_at", DESCENDING).limit(LIST_LIMIT)
    return [song_out(d) for d in docs]


@router.get("/stats", response_model=StatsOut)
def stats(request: Request, db: Database = Depends(get_db), owner: Optional[str] = Depends(require_user)):
    scope = owner_scope(request, owner)
    docs = get_documents("song", scope, database=db)
    top = db["song"].find(scope).sort([("plays", DESCENDING), ("created_at", DESCENDING)]).limit(TOP_SONGS)
    return StatsOut(
        total_songs=len(docs),
        total_plays=sum(int(d.get("plays") or 0) for d in docs),
        total_size=sum(int(d.get("size") or 0) for d in docs),
        total_duration=sum(int(d.get("duration") or 0) for d in docs),
        top_songs=[song_out(d) for d in top],
    )
