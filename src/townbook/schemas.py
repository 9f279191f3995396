from pydantic import BaseModel, Field, constr
from datetime import date, datetime

Clock = constr(pattern=r'^([01]?\d|2[0-3]):[0-5]\d$')

class UserIn(BaseModel):
    name: str
    email: str

class UserOut(BaseModel):
    id: str
    name: str
    email: str
    role: str

class UserCreated(UserOut):
    api_token: str

class BookIn(BaseModel):
    title: str
    author: str
    location: str
    total_copies: int = Field(default=1, ge=1)
    isbn: str | None = None
    genre: str | None = None

class BookUpdate(BaseModel):
    title: str | None = None
    author: str | None = None
    location: str | None = None
    genre: str | None = None
    isbn: str | None = None
    total_copies: int | None = Field(default=None, ge=1)

class BookOut(BaseModel):
    id: str
    title: str
    author: str
    isbn: str | None
    genre: str
    location: str
    total_copies: int
    available_copies: int
    status: str

class RoomIn(BaseModel):
    name: str
    capacity: int = Field(ge=1)
    location: str
    amenities: list[str] = Field(default_factory=list)

class RoomUpdate(BaseModel):
    name: str | None = None
    location: str | None = None
    capacity: int | None = Field(default=None, ge=1)
    amenities: list[str] | None = None

class RoomOut(BaseModel):
    id: str
    name: str
    capacity: int
    location: str
    amenities: list[str]

class AvailabilityOut(BaseModel):
    room_id: str
    available: bool

class ReservationIn(BaseModel):
    type: str
    item_id: str
    start_date: date
    end_date: date
    start_time: Clock | None = None
    end_time: Clock | None = None
    notes: str | None = None

class ReservationOut(BaseModel):
    id: str
    user_id: str
    type: str
    item_id: str
    status: str
    start_date: date
    end_date: date
    start_time: str | None
    end_time: str | None
    notes: str | None
    approved_by: str | None
    approved_at: datetime | None
    returned_at: datetime | None

class NotificationOut(BaseModel):
    id: str
    title: str
    message: str
    type: str
    read: bool
    related_id: str | None
    created_at: datetime | None

class StatsOut(BaseModel):
    total_books: int
    total_rooms: int
    total_users: int
    active_reservations: int
