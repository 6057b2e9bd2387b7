from sqlalchemy import (
    JSON, Column, Integer, Text, String, CheckConstraint,
    ForeignKey,
    TIMESTAMP, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

DRAFT_STATUSES = ("pending", "processing", "completed", "error")
CHUNK_STATUSES = ("pending", "processing", "done", "error")


class Draft(Base):
    __tablename__ = "drafts"

    id = Column(String(32), primary_key=True)
    user_id = Column(String, nullable=False)
    title = Column(String(200), nullable=False)
    category_id = Column(String)

    file_name = Column(Text, nullable=False)
    file_size = Column(Integer, nullable=False)
    total_pages = Column(Integer, nullable=False)
    pdf_key = Column(Text)

    status = Column(String, nullable=False, default="pending")

    # Aggregate chunk state; processed_chunks is always rewritten from
    # the done count of draft_chunks, never incremented.
    total_chunks = Column(Integer, nullable=False)
    processed_chunks = Column(Integer, nullable=False, default=0)
    current_chunk = Column(Integer, nullable=False, default=0)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
    expires_at = Column(TIMESTAMP, nullable=False)

    chunks = relationship(
        "DraftChunk",
        order_by="DraftChunk.chunk_index",
        cascade="all, delete-orphan",
    )
    questions = relationship(
        "DraftQuestion",
        order_by="DraftQuestion.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'error')",
            name="draft_status_check"
        ),
    )


class DraftChunk(Base):
    __tablename__ = "draft_chunks"

    id = Column(Integer, primary_key=True)
    draft_id = Column(String(32), ForeignKey("drafts.id", ondelete="CASCADE"), nullable=False)
    chunk_index = Column(Integer, nullable=False)
    start_page = Column(Integer, nullable=False)
    end_page = Column(Integer, nullable=False)

    status = Column(String, nullable=False, default="pending")
    locked_at = Column(TIMESTAMP)
    locked_by = Column(String)
    error = Column(Text)

    __table_args__ = (
        UniqueConstraint(
            "draft_id",
            "chunk_index",
            name="draft_chunk_index_unique"
        ),
        CheckConstraint(
            "status IN ('pending', 'processing', 'done', 'error')",
            name="draft_chunk_status_check"
        ),
        CheckConstraint(
            "start_page >= 1 AND end_page >= start_page",
            name="draft_chunk_page_range_check"
        ),
    )


class DraftQuestion(Base):
    __tablename__ = "draft_questions"

    id = Column(Integer, primary_key=True)
    draft_id = Column(String(32), ForeignKey("drafts.id", ondelete="CASCADE"), nullable=False)
    chunk_index = Column(Integer)

    question_type = Column(
        String,
        nullable=False
    )  # 'single' or 'multiple'

    question_text = Column(Text, nullable=False)
    options = Column(JSON, nullable=False)
    correct_index = Column(Integer)
    correct_indexes = Column(JSON)
    explanation = Column(Text)
    question_image = Column(Text)
    option_images = Column(JSON)

    created_at = Column(TIMESTAMP, server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            "question_type IN ('single', 'multiple')",
            name="draft_question_type_check"
        ),
        CheckConstraint(
            """
            (question_type = 'single' AND correct_index IS NOT NULL)
            OR
            (question_type = 'multiple' AND correct_indexes IS NOT NULL)
            """,
            name="draft_question_answer_consistency_check"
        ),
    )
