"""
Database Schemas for the AI Music Player

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercased class name. Example: class Song -> "song" collection.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Song(BaseModel):
    """
    Uploaded tracks
    Collection name: "song"
    """
    title: str = Field(..., description="Song title")
    artist: str = Field(..., description="Artist name")
    cloudinary_id: Optional[str] = Field(None, description="Public id of the asset in cloud storage")
    url: str = Field(..., description="Streaming URL of the audio asset")
    user_email: Optional[str] = Field(None, description="Email of the uploader, if any")
    duration: int = Field(0, ge=0, description="Length in whole seconds")
    size: int = Field(0, ge=0, description="File size in bytes")
    format: Optional[str] = Field(None, description="Audio format reported by storage")
    thumbnail: Optional[str] = Field(None, description="Waveform image URL")
    plays: int = Field(0, ge=0, description="Total play count")


class User(BaseModel):
    """
    Accounts known by email
    Collection name: "user"
    """
    email: str = Field(..., description="Lowercased email address, unique")
    otp: Optional[str] = Field(None, description="Pending one-time passcode")
    otp_expires: Optional[datetime] = Field(None, description="When the pending passcode stops being valid")
    otp_attempts: int = Field(0, ge=0, description="Failed verifications against the pending passcode")
    last_otp_request: Optional[datetime] = Field(None, description="When a passcode was last sent")
    last_login: Optional[datetime] = Field(None, description="Last successful verification")


class Session(BaseModel):
    """
    Server-side login sessions
    Collection name: "session"
    """
    sid: str = Field(..., description="Random session token carried in the signed cookie")
    user_id: str = Field(..., description="Id of the user document")
    email: str = Field(..., description="Email of the logged in user")
    expires_at: datetime = Field(..., description="Session end; removed by a TTL index")


class TestOtp(BaseModel):
    """
    Passcodes captured by the simulated mail transport
    Collection name: "testotp"
    """
    email: str = Field(..., description="Recipient")
    otp: str = Field(..., description="Code that would have been emailed")
