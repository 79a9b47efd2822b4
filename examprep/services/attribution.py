"""
Answer attribution: which stored answer is authoritative for each question.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from examprep.models.orm import Answer


def normalize_question_id(question_id: Any, level: Any = None) -> str:
    """Strip a redundant ``<LEVEL>_`` prefix (case-insensitive) from a question id."""
    raw = "" if question_id is None else str(question_id)
    prefix = f"{str(level or '').upper()}_"
    if level and raw.upper().startswith(prefix):
        return raw[len(prefix):]
    return raw


def candidate_question_ids(question_id: Any, level: Any) -> List[str]:
    """Every stored form a question id may have taken: raw, normalized and prefixed."""
    normalized = normalize_question_id(question_id, level)
    forms = [str(question_id), normalized, f"{str(level).upper()}_{normalized}"]
    return list(dict.fromkeys(forms))


def _sort_key(answer: Answer):
    created = answer.created_at or datetime.min.replace(tzinfo=timezone.utc)
    if created.tzinfo is None:
        # SQLite hands back naive datetimes
        created = created.replace(tzinfo=timezone.utc)
    return created, answer.id or 0


def filter_latest_answers(answers: Iterable[Answer], current_attempt: int,
                          current_sections: Optional[Dict[tuple, Optional[int]]] = None) -> List[Dict[str, Any]]:
    """Latest answer per (level, mode, normalized question id).

    ``current_sections`` maps (level, mode) to the section currently assigned;
    answers belonging to another section for that slot, or to a slot with no
    section at all, are dropped. The
    winner of each group is flagged ``isStale`` when it was submitted during
    an earlier attempt.
    """
    latest: Dict[tuple, Answer] = {}
    for ans in answers:
        if current_sections is not None:
            if current_sections.get((ans.level, ans.mode)) != ans.section_id:
                continue
        key = (ans.level, ans.mode, normalize_question_id(ans.question_id, ans.level))
        existing = latest.get(key)
        if existing is None or _sort_key(ans) > _sort_key(existing):
            latest[key] = ans
    return [answer_to_dict(a, current_attempt) for a in sorted(latest.values(), key=_sort_key)]


def answer_to_dict(answer: Answer, current_attempt: int) -> Dict[str, Any]:
    return {
        "id": answer.id,
        "examId": answer.mock_exam_id,
        "attemptNumber": answer.attempt_number,
        "sectionId": answer.section_id,
        "sectionType": answer.level,
        "mode": answer.mode,
        "questionId": normalize_question_id(answer.question_id, answer.level),
        "answerText": answer.answer_text,
        "audioUrl": answer.audio_url,
        "createdAt": answer.created_at.isoformat() if answer.created_at else None,
        "isStale": answer.attempt_number != current_attempt,
    }
