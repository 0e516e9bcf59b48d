from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Column,
    ForeignKey,
    Integer,
    String,
    Float,
    Boolean,
    UniqueConstraint,
)


Base = declarative_base()

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"


# ----------------------------
# ORM models
# ----------------------------
class Photo(Base):
    __tablename__ = "photos"
    id = Column(String, primary_key=True)
    bib_number = Column(String, nullable=False, index=True)
    preview_url = Column(String, nullable=False)
    highres_url = Column(String, nullable=False)
    watermark_url = Column(String, nullable=True)
    photo_order = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    uploaded_at = Column(Float, nullable=False)
    # when the stored signed URLs were last issued
    urls_signed_at = Column(Float, nullable=True)


class PhotoAccess(Base):
    __tablename__ = "photo_access"
    __table_args__ = (UniqueConstraint("photo_id", "bib_number"),)
    id = Column(String, primary_key=True)
    photo_id = Column(
        String, ForeignKey("photos.id", ondelete="CASCADE"), nullable=False
    )
    bib_number = Column(String, nullable=False, index=True)
    survey_completed = Column(Boolean, nullable=False, default=False)
    payment_completed = Column(Boolean, nullable=False, default=False)
    # is_unlocked implies payment_completed; never reset once set
    is_unlocked = Column(Boolean, nullable=False, default=False)
    unlocked_at = Column(Float, nullable=True)
    download_count = Column(Integer, nullable=False, default=0)
    last_downloaded_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class PhotoSelection(Base):
    __tablename__ = "photo_selections"
    __table_args__ = (UniqueConstraint("bib_number", "photo_id"),)
    id = Column(String, primary_key=True)
    bib_number = Column(String, nullable=False, index=True)
    photo_id = Column(
        String, ForeignKey("photos.id", ondelete="CASCADE"), nullable=False
    )
    is_selected = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class SurveyResponse(Base):
    __tablename__ = "survey_responses"
    id = Column(String, primary_key=True)
    bib_number = Column(String, nullable=False, unique=True)
    selected_photo_ids = Column(JSON, nullable=False)
    runner_name = Column(String, nullable=False)
    runner_email = Column(String, nullable=False)
    social_media_preference = Column(String, nullable=False)
    waiting_stops_buying = Column(String, nullable=False)
    marketing_consent = Column(Boolean, nullable=False, default=False)
    completed_at = Column(Float, nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    bib_number = Column(String, nullable=False, index=True)
    selected_photo_ids = Column(JSON, nullable=False)
    session_id = Column(String, nullable=True, unique=True)
    payment_intent_id = Column(String, nullable=True, index=True)
    total_photos = Column(Integer, nullable=False)
    price_per_photo = Column(Integer, nullable=False)  # cents
    total_amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="usd")

    # pending | completed | failed | cancelled
    status = Column(String, nullable=False, default=PAYMENT_PENDING)
    created_at = Column(Float, nullable=False)
    completed_at = Column(Float, nullable=True)

    email_sent = Column(Boolean, nullable=False, default=False)
    email_sent_at = Column(Float, nullable=True)
    email_attempts = Column(Integer, nullable=False, default=0)


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (UniqueConstraint("payment_id", "photo_id"),)
    id = Column(String, primary_key=True)
    payment_id = Column(
        String, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False
    )
    photo_id = Column(
        String, ForeignKey("photos.id", ondelete="CASCADE"), nullable=False
    )
    price_paid = Column(Integer, nullable=False)  # cents
    created_at = Column(Float, nullable=False)
