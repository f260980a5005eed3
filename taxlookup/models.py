"""SQLAlchemy models for generated-form bookkeeping.

- PdfCacheEntry indexes filled PDF forms by (parcel, form type, fiscal year),
  so a form is generated once per fiscal year and then served from storage
- AbatementSequence hands out abatement application numbers, restarting at
  10001 every fiscal year
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base

FIRST_ABATEMENT_SEQUENCE = 10001


class PdfCacheEntry(Base):
    """A generated PDF form stored under ``generated-pdfs/``."""

    __tablename__ = "pdf_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    parcel_id: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    form_type: Mapped[str] = mapped_column(String(30), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_path: Mapped[str] = mapped_column(String(200), nullable=False)
    application_number: Mapped[str | None] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_pdf_cache_parcel_form_year', 'parcel_id', 'form_type', 'fiscal_year', unique=True),
    )

    def __repr__(self) -> str:
        return f"<PdfCacheEntry {self.parcel_id} {self.form_type} FY{self.fiscal_year}>"


class AbatementSequence(Base):
    """Next abatement application sequence number for a fiscal year."""

    __tablename__ = "abatement_sequences"

    fiscal_year: Mapped[int] = mapped_column(Integer, primary_key=True)
    counter: Mapped[int] = mapped_column(Integer, nullable=False, default=FIRST_ABATEMENT_SEQUENCE)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<AbatementSequence FY{self.fiscal_year}: next {self.counter}>"
