"""
Mock exam session state machine.

A speaking session starts on an A2 paper, branches to A1 or B1 after the
decision step, and ends when completed. Listening sessions follow the same
A2-then-branch shape with their own sections. Every operation checks that
the session belongs to the caller; a foreign session is reported exactly like
a missing one.
"""
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from examprep.core.config import settings
from examprep.core.errors import NotFoundError, InvalidInputError, ConflictError
from examprep.models.orm import MockExam, Answer, Level, Mode, Language, ExamStatus
from examprep.services.catalog import ContentCatalog
from examprep.services.selection import SectionSelector, SelectionStrategy, first_unseen, paired_by_index
from examprep.services.selector_choice import get_rotation_strategy_for_user
from examprep.services.usage import collect_usage, sessions_for_section
from examprep.services.attribution import filter_latest_answers, candidate_question_ids, normalize_question_id

logger = logging.getLogger(__name__)


# ---------- decision choices ----------

@dataclass(frozen=True)
class PathA1:
    pass


@dataclass(frozen=True)
class PathB1Start:
    pass


@dataclass(frozen=True)
class PathB1Topic:
    section_id: int


DecisionChoice = Union[PathA1, PathB1Start, PathB1Topic]


def parse_decision_choice(raw: Any) -> DecisionChoice:
    """Decode the client's ``choice``: "A1", "B1", or the id of a B1 topic."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise InvalidInputError("Missing choice.")
    if isinstance(raw, bool):
        raise InvalidInputError("Invalid choice")
    if isinstance(raw, int):
        if raw <= 0:
            raise InvalidInputError("Invalid choice")
        return PathB1Topic(raw)
    if isinstance(raw, str):
        value = raw.strip().upper()
        if value == Level.A1.value:
            return PathA1()
        if value == Level.B1.value:
            return PathB1Start()
        if value.isdigit() and int(value) > 0:
            return PathB1Topic(int(value))
    raise InvalidInputError("Invalid choice")


def parse_level(raw: Any) -> Level:
    try:
        return Level(str(raw).strip().upper())
    except ValueError:
        raise InvalidInputError(f"Invalid section type: {raw}")


def parse_path(raw: Any) -> Level:
    value = str(raw or "").strip().upper()
    if value not in (Level.A1.value, Level.B1.value):
        raise InvalidInputError("Choice must be 'A1' or 'B1'")
    return Level(value)


def parse_mode(raw: Any) -> Mode:
    for mode in Mode:
        if str(raw).strip().lower() == mode.value.lower():
            return mode
    raise InvalidInputError(f"Invalid mode: {raw}")


def parse_language(raw: Any) -> str:
    try:
        return Language(str(raw or settings.DEFAULT_LANGUAGE).strip().upper()).value
    except ValueError:
        raise InvalidInputError(f"Unsupported language: {raw}")


@dataclass
class AnswerSubmission:
    level: str
    mode: str
    question_id: str
    answer_text: str = ""
    audio_url: str = ""


class MockExamService:
    """Operations on one user's mock exam sessions, bound to a database session."""

    def __init__(self, db: Session, catalog: ContentCatalog, rng: Optional[random.Random] = None):
        self.db = db
        self.catalog = catalog
        self.rng = rng

    # ---------- helpers ----------

    def _get_owned_exam(self, exam_id: int, user_id: int) -> MockExam:
        exam = self.db.get(MockExam, exam_id)
        if exam is None or exam.user_id != user_id:
            raise NotFoundError("Exam not found")
        return exam

    def _commit(self) -> None:
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConflictError("Exam was modified by another request")

    def _section_entry(self, level: Level, mode: Mode, section_id: Optional[int]) -> Dict[str, Any]:
        section = self.catalog.get_section(self.db, section_id)
        return {
            "level": level.value,
            "type": mode.value,
            "sectionId": section_id,
            "title": section.title if section else None,
            "section": self.catalog.section_payload(section),
        }

    def _sections(self, exam: MockExam) -> List[Dict[str, Any]]:
        """Assigned sections in exam order: A2 first, then the branch that was taken."""
        levels = [Level.A2]
        if exam.selected_path:
            levels.append(Level(exam.selected_path))
        entries = []
        for mode in Mode:
            for level in levels:
                sid = exam.section_id_for(level, mode)
                if sid is not None:
                    entries.append(self._section_entry(level, mode, sid))
        return entries

    @staticmethod
    def _current_sections(exam: MockExam) -> Dict[tuple, Optional[int]]:
        return {(level.value, mode.value): exam.section_id_for(level, mode) for level in Level for mode in Mode}

    def _answers(self, exam: MockExam, rows: Optional[List[Answer]] = None) -> List[Dict[str, Any]]:
        if rows is None:
            rows = list(self.db.scalars(select(Answer).where(Answer.mock_exam_id == exam.id)))
        return filter_latest_answers(rows, exam.attempt, self._current_sections(exam))

    def _rotate(self, user_id: int, level: Level, language: str, selector: SectionSelector) -> int:
        ordered = self.catalog.list_sections(self.db, level, Mode.LISTENING, language)
        history = collect_usage(self.db, user_id, level, Mode.LISTENING)
        picked = selector.select(ordered, history, 1)[0]
        logger.info(f"[ROTATION] User {user_id} gets {level.value} Listening section {picked} ({selector.strategy.value})")
        return picked

    # ---------- speaking flow ----------

    def start(self, user_id: int, language: Any = None, requested_exam_id: Optional[int] = None) -> Dict[str, Any]:
        """Resume an in-progress session, or assign the next A2 paper."""
        lang = parse_language(language)
        logger.info(f"[START] User {user_id} requested start. examId: {requested_exam_id}, language: {lang}")

        if requested_exam_id:
            existing = self.db.scalar(select(MockExam).where(
                MockExam.id == requested_exam_id, MockExam.user_id == user_id,
                MockExam.status == ExamStatus.IN_PROGRESS.value))
            if existing is not None:
                logger.info(f"Resuming exam {existing.id} for user {user_id}")
                return {
                    "examId": existing.id,
                    "attempt": existing.attempt,
                    "resumed": True,
                    "selectedPath": existing.selected_path,
                    "sections": self._sections(existing),
                    "answers": self._answers(existing),
                }

        ordered = self.catalog.list_sections(self.db, Level.A2, Mode.SPEAKING, lang)
        history = collect_usage(self.db, user_id, Level.A2, Mode.SPEAKING)
        a2_id, already_seen = first_unseen(ordered, history.seen, self.rng)
        paper = ordered.index(a2_id) + 1

        reused = sessions_for_section(self.db, user_id, Level.A2, Mode.SPEAKING, a2_id) if already_seen else []
        if reused:
            exam = reused[0]
            exam.reset_for_new_attempt()
            exam.language = lang
            logger.info(f"[PAPER_SELECTION] User {user_id} has seen all A2 papers. "
                        f"Re-using A2 id {a2_id} (paper #{paper}) on exam {exam.id}, attempt {exam.attempt}")
        else:
            exam = MockExam(user_id=user_id, speaking_a2_id=a2_id, status=ExamStatus.IN_PROGRESS.value,
                            attempt=1, language=lang)
            self.db.add(exam)
            logger.info(f"[PAPER_SELECTION] User {user_id} gets A2 paper id {a2_id} (paper #{paper})")
        self._commit()

        return {
            "examId": exam.id,
            "attempt": exam.attempt,
            "section": Level.A2.value,
            "resumed": False,
            "alreadySeen": already_seen,
            "sections": [self._section_entry(Level.A2, Mode.SPEAKING, a2_id)],
        }

    def decision(self, exam_id: int, user_id: int, raw_choice: Any, language: Any = None) -> Dict[str, Any]:
        exam = self._get_owned_exam(exam_id, user_id)
        choice = parse_decision_choice(raw_choice)
        lang = exam.language or parse_language(language)
        logger.info(f"[DECISION] User {user_id} made choice {choice} for exam {exam_id}")

        if isinstance(choice, PathA1):
            a2 = self.catalog.get_section(self.db, exam.speaking_a2_id)
            if a2 is None:
                raise InvalidInputError("No A2 section on this exam")
            a2_ordered = self.catalog.list_sections(self.db, Level.A2, Mode.SPEAKING, a2.language)
            a1_ordered = self.catalog.list_sections(self.db, Level.A1, Mode.SPEAKING, a2.language)
            a1_id = paired_by_index(a2_ordered, a2.id, a1_ordered)
            exam.choose_path(Level.A1, Mode.SPEAKING, a1_id)
            self._commit()
            logger.info(f"[PAPER_PAIRING] A2 id {a2.id} (paper #{a2_ordered.index(a2.id) + 1}) -> A1 id {a1_id}")
            return {
                "examId": exam.id,
                "section": Level.A1.value,
                "selectedPath": Level.A1.value,
                "sections": [self._section_entry(Level.A1, Mode.SPEAKING, a1_id)],
            }

        if isinstance(choice, PathB1Start):
            if exam.speaking_b1_option1_id and exam.speaking_b1_option2_id:
                option1, option2 = exam.speaking_b1_option1_id, exam.speaking_b1_option2_id
                logger.info(f"[DECISION] Reusing B1 options for exam {exam.id}: option1={option1}, option2={option2}")
            else:
                ordered = self.catalog.list_sections(self.db, Level.B1, Mode.SPEAKING, lang)
                history = collect_usage(self.db, user_id, Level.B1, Mode.SPEAKING)
                selector = SectionSelector(SelectionStrategy.PRIORITY_SHUFFLE, self.rng)
                option1, option2 = selector.select(ordered, history, 2)
                exam.speaking_b1_option1_id, exam.speaking_b1_option2_id = option1, option2
                self._commit()
                logger.info(f"[B1_OPTIONS] User {user_id}: option1={option1}, option2={option2}. "
                            f"Seen: {sorted(history.seen)}")
            sections = self.catalog.get_sections(self.db, [option1, option2])
            return {
                "examId": exam.id,
                "section": Level.B1.value,
                "topicSelection": {
                    "title": "Section B1",
                    "options": [{"id": sid, "title": sections[sid].title if sid in sections else None}
                                for sid in (option1, option2)],
                },
            }

        section = self.catalog.get_section(self.db, choice.section_id)
        if section is None or section.level != Level.B1.value or section.mode != Mode.SPEAKING.value:
            raise InvalidInputError("Unknown B1 topic")
        offered = {exam.speaking_b1_option1_id, exam.speaking_b1_option2_id} - {None}
        if not offered:
            raise InvalidInputError("B1 topics have not been offered yet; choose 'B1' first")
        if section.id not in offered:
            raise InvalidInputError("Topic is not one of the offered options")
        exam.choose_path(Level.B1, Mode.SPEAKING, section.id)
        self._commit()
        return {
            "examId": exam.id,
            "section": Level.B1.value,
            "selectedPath": Level.B1.value,
            "sections": [self._section_entry(Level.B1, Mode.SPEAKING, section.id)],
        }

    # ---------- listening flow ----------

    def start_listening(self, user_id: int, language: Any = None, path: Optional[str] = None,
                        speaking_exam_id: Optional[int] = None) -> Dict[str, Any]:
        """Always opens a new listening session; loads the branch too when the path is already known."""
        lang = parse_language(language)
        resolved = parse_path(path) if path else None
        if resolved is None and speaking_exam_id:
            speaking = self.db.scalar(select(MockExam).where(MockExam.id == speaking_exam_id,
                                                             MockExam.user_id == user_id))
            if speaking is not None and speaking.selected_path:
                resolved = Level(speaking.selected_path)
        logger.info(f"[LISTEN_START] User {user_id} listening start. path: {resolved.value if resolved else None}, "
                    f"speakingExamId: {speaking_exam_id}, language: {lang}")

        selector = SectionSelector(get_rotation_strategy_for_user(self.db, user_id), self.rng)
        exam = MockExam(user_id=user_id, status=ExamStatus.IN_PROGRESS.value, attempt=1, language=lang,
                        listening_a2_id=self._rotate(user_id, Level.A2, lang, selector))
        if resolved is not None:
            exam.choose_path(resolved, Mode.LISTENING, self._rotate(user_id, resolved, lang, selector))
        self.db.add(exam)
        self._commit()
        return {
            "examId": exam.id,
            "attempt": exam.attempt,
            "selectedPath": exam.selected_path,
            "sections": self._sections(exam),
        }

    def listening_decision(self, exam_id: int, user_id: int, raw_choice: Any, language: Any = None) -> Dict[str, Any]:
        exam = self._get_owned_exam(exam_id, user_id)
        level = parse_path(raw_choice)
        lang = exam.language or parse_language(language)
        selector = SectionSelector(get_rotation_strategy_for_user(self.db, user_id), self.rng)
        section_id = self._rotate(user_id, level, lang, selector)
        exam.choose_path(level, Mode.LISTENING, section_id)
        self._commit()
        logger.info(f"[LISTEN_DECISION] User {user_id} chose {level.value} listening for exam {exam_id}")
        return {
            "examId": exam.id,
            "selectedPath": level.value,
            "sections": [self._section_entry(level, Mode.LISTENING, section_id)],
        }

    # ---------- answers ----------

    def submit_answers(self, exam_id: int, user_id: int, answers: List[AnswerSubmission]) -> Dict[str, Any]:
        """Store each answer as a new row; answers for unassigned sections are skipped."""
        exam = self._get_owned_exam(exam_id, user_id)
        if not answers:
            raise InvalidInputError("Answers must be a non-empty array")
        saved = 0
        for ans in answers:
            try:
                level, mode = parse_level(ans.level), parse_mode(ans.mode)
            except InvalidInputError as e:
                logger.warning(f"Skipping answer {ans.question_id} on exam {exam_id}: {e.message}")
                continue
            section_id = exam.section_id_for(level, mode)
            if not section_id:
                logger.warning(f"Could not find section for {level.value} {mode.value} on exam {exam_id}")
                continue
            try:
                with self.db.begin_nested():
                    self.db.add(Answer(
                        mock_exam_id=exam.id, attempt_number=exam.attempt, user_id=user_id,
                        section_id=section_id, level=level.value, mode=mode.value,
                        question_id=normalize_question_id(ans.question_id, level.value),
                        answer_text=ans.answer_text or "", audio_url=ans.audio_url or "",
                    ))
                saved += 1
            except SQLAlchemyError as e:
                logger.warning(f"Failed to store answer {ans.question_id} on exam {exam_id}: {e}")
        self._commit()
        logger.info(f"Stored {saved}/{len(answers)} answers for exam {exam_id}, attempt {exam.attempt}")
        return {"ok": True, "count": saved}

    def delete_latest_answer(self, exam_id: int, user_id: int, level: Any, question_id: str,
                             mode: Any = Mode.SPEAKING.value) -> Dict[str, Any]:
        exam = self._get_owned_exam(exam_id, user_id)
        level, mode = parse_level(level), parse_mode(mode)
        section_id = exam.section_id_for(level, mode)
        if not section_id:
            raise NotFoundError("Section not found for this exam")
        latest = self.db.scalar(
            select(Answer)
            .where(Answer.mock_exam_id == exam.id, Answer.user_id == user_id, Answer.section_id == section_id,
                   Answer.level == level.value, Answer.mode == mode.value,
                   Answer.question_id.in_(candidate_question_ids(question_id, level.value)))
            .order_by(Answer.created_at.desc(), Answer.id.desc())
            .limit(1)
        )
        if latest is None:
            raise NotFoundError("Answer not found")
        deleted_id = latest.id
        self.db.delete(latest)
        self._commit()
        return {"ok": True, "deletedId": deleted_id}

    # ---------- completion & reads ----------

    def complete(self, exam_id: int, user_id: int) -> Dict[str, Any]:
        exam = self._get_owned_exam(exam_id, user_id)
        exam.status = ExamStatus.COMPLETED.value
        self._commit()
        logger.info(f"[COMPLETE] User {user_id} completed exam {exam_id}")
        return {"ok": True}

    def fetch_detail(self, exam_id: int, user_id: int) -> Dict[str, Any]:
        exam = self._get_owned_exam(exam_id, user_id)
        return {"exam": exam.to_dict(), "sections": self._sections(exam), "answers": self._answers(exam)}

    def fetch_history(self, user_id: int) -> List[Dict[str, Any]]:
        exams = list(self.db.scalars(
            select(MockExam).where(MockExam.user_id == user_id)
            .order_by(MockExam.updated_at.desc(), MockExam.id.desc())
        ))
        by_exam: Dict[int, List[Answer]] = {exam.id: [] for exam in exams}
        if exams:
            for ans in self.db.scalars(select(Answer).where(Answer.mock_exam_id.in_(list(by_exam)))):
                by_exam[ans.mock_exam_id].append(ans)
        return [
            {"exam": exam.to_dict(), "sections": self._sections(exam), "answers": self._answers(exam, by_exam[exam.id])}
            for exam in exams
        ]
