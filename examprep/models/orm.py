import enum
from datetime import datetime, timezone
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import BigInteger, Integer, String, Text, Boolean, ForeignKey, JSON, DateTime, Index

# BIGINT primary keys only autoincrement as INTEGER on SQLite
BigId = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Level(str, enum.Enum):
    A1 = "A1"
    A2 = "A2"
    B1 = "B1"


class Mode(str, enum.Enum):
    SPEAKING = "Speaking"
    LISTENING = "Listening"


class Language(str, enum.Enum):
    FR = "FR"
    EN = "EN"
    DE = "DE"


class ExamStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class Base(DeclarativeBase): pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    uid: Mapped[str] = mapped_column(String, unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Section(Base):
    """One paper of exam content; the body lives in the JSON content store under ``json_id``."""
    __tablename__ = "sections"
    __table_args__ = (Index("ix_sections_catalog", "level", "mode", "language", "sequence_index"),)
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    level: Mapped[str] = mapped_column(String(2))
    mode: Mapped[str] = mapped_column(String(16))
    language: Mapped[str] = mapped_column(String(2))
    json_id: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    sequence_index: Mapped[int] = mapped_column(Integer, default=0)


class MockExam(Base):
    __tablename__ = "mock_exams"
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), index=True)
    status: Mapped[str] = mapped_column(String(16), default=ExamStatus.IN_PROGRESS.value)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    selected_path: Mapped[str | None] = mapped_column(String(2), nullable=True)
    language: Mapped[str] = mapped_column(String(2), default=Language.FR.value)
    speaking_a1_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("sections.id"), nullable=True)
    speaking_a2_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("sections.id"), nullable=True, index=True)
    speaking_b1_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("sections.id"), nullable=True)
    listening_a1_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("sections.id"), nullable=True)
    listening_a2_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("sections.id"), nullable=True)
    listening_b1_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("sections.id"), nullable=True)
    speaking_b1_option1_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("sections.id"), nullable=True)
    speaking_b1_option2_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("sections.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @staticmethod
    def section_column(level: Level, mode: Mode) -> str:
        return f"{Mode(mode).value.lower()}_{Level(level).value.lower()}_id"

    def section_id_for(self, level: Level, mode: Mode) -> int | None:
        return getattr(self, self.section_column(level, mode))

    def assign_section(self, level: Level, mode: Mode, section_id: int | None) -> None:
        setattr(self, self.section_column(level, mode), section_id)

    def choose_path(self, level: Level, mode: Mode, section_id: int) -> None:
        """Take the A1 or B1 branch; the other branch's reference for ``mode`` is cleared."""
        other = Level.B1 if Level(level) == Level.A1 else Level.A1
        self.assign_section(level, mode, section_id)
        self.assign_section(other, mode, None)
        self.selected_path = Level(level).value

    def reset_for_new_attempt(self) -> None:
        """Reuse this session for another run of the same A2 paper. B1 options are kept."""
        self.attempt = (self.attempt or 1) + 1
        self.status = ExamStatus.IN_PROGRESS.value
        self.selected_path = None
        for level in (Level.A1, Level.B1):
            for mode in Mode:
                self.assign_section(level, mode, None)

    def to_dict(self) -> dict:
        return {
            "id": self.id, "userId": self.user_id, "status": self.status, "attempt": self.attempt,
            "selectedPath": self.selected_path, "language": self.language,
            "speakingA1Id": self.speaking_a1_id, "speakingA2Id": self.speaking_a2_id, "speakingB1Id": self.speaking_b1_id,
            "listeningA1Id": self.listening_a1_id, "listeningA2Id": self.listening_a2_id, "listeningB1Id": self.listening_b1_id,
            "speakingB1Option1Id": self.speaking_b1_option1_id, "speakingB1Option2Id": self.speaking_b1_option2_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class Answer(Base):
    """One submission; rows are never updated in place, a resubmission is a new row."""
    __tablename__ = "mock_exam_answers"
    __table_args__ = (Index("ix_answers_lookup", "mock_exam_id", "section_id", "question_id"),)
    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    mock_exam_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("mock_exams.id"), index=True)
    attempt_number: Mapped[int] = mapped_column(Integer)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"))
    section_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("sections.id"))
    level: Mapped[str] = mapped_column(String(2))
    mode: Mapped[str] = mapped_column(String(16))
    question_id: Mapped[str] = mapped_column(String)
    answer_text: Mapped[str] = mapped_column(Text, default="")
    audio_url: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class FeatureFlag(Base):
    __tablename__ = "feature_flags"
    key: Mapped[str] = mapped_column(String, primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    value_json: Mapped[dict] = mapped_column(JSON)


class CohortAssignment(Base):
    __tablename__ = "cohort_assignments"
    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    cohort_key: Mapped[str] = mapped_column(String, primary_key=True)
    cohort_value: Mapped[str] = mapped_column(String)
