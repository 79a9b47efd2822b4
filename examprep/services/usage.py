from sqlalchemy import select
from sqlalchemy.orm import Session
from examprep.models.orm import MockExam, Level, Mode
from examprep.services.selection import UsageHistory


def collect_usage(db: Session, user_id: int, level: Level, mode: Mode) -> UsageHistory:
    """Usage of (level, mode) sections across all of the user's sessions.

    Unselected B1 speaking options count as ``shown``.
    """
    column = getattr(MockExam, MockExam.section_column(level, mode))
    history = UsageHistory()
    if Level(level) == Level.B1 and Mode(mode) == Mode.SPEAKING:
        rows = db.execute(
            select(column, MockExam.speaking_b1_option1_id, MockExam.speaking_b1_option2_id)
            .where(MockExam.user_id == user_id)
        ).all()
        for chosen, opt1, opt2 in rows:
            if chosen is not None:
                history.assigned[chosen] += 1
            for opt in {opt1, opt2}:
                if opt is not None and opt != chosen:
                    history.shown[opt] += 1
        return history
    for (sid,) in db.execute(select(column).where(MockExam.user_id == user_id, column.is_not(None))).all():
        history.assigned[sid] += 1
    return history


def sessions_for_section(db: Session, user_id: int, level: Level, mode: Mode, section_id: int) -> list[MockExam]:
    column = getattr(MockExam, MockExam.section_column(level, mode))
    return list(db.scalars(
        select(MockExam).where(MockExam.user_id == user_id, column == section_id).order_by(MockExam.id.asc())
    ))
