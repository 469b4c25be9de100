# offline_doctor/db/models.py
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import LargeBinary
import uuid

def uuid_str() -> str:
    return uuid.uuid4().hex

class Base(DeclarativeBase):
    pass

class KVEntry(Base):
    """One row per key. SQLite orders BLOB keys byte-wise, so the table behaves as an ordered map."""
    __tablename__ = "kv"
    key: Mapped[bytes] = mapped_column(LargeBinary, primary_key = True)
    value: Mapped[bytes] = mapped_column(LargeBinary, nullable = False)
