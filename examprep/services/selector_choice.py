from sqlalchemy.orm import Session
from sqlalchemy import select
from examprep.core.config import settings
from examprep.models.orm import FeatureFlag, CohortAssignment
from examprep.services.selection import SelectionStrategy

ROTATION_KEY = "rotation_strategy"
ROTATION_CHOICES = {SelectionStrategy.LEAST_USED.value, SelectionStrategy.RANDOM.value}


def get_rotation_strategy_for_user(db: Session, user_id: int) -> SelectionStrategy:
    ff = db.scalar(select(FeatureFlag).where(FeatureFlag.key == ROTATION_KEY))
    default = (ff.value_json or {}).get("value") if (ff and ff.enabled) else settings.ROTATION_STRATEGY
    cohort = db.scalar(select(CohortAssignment).where(CohortAssignment.user_id == user_id,
                                                      CohortAssignment.cohort_key == ROTATION_KEY))
    value = cohort.cohort_value if cohort else default
    return SelectionStrategy(value) if value in ROTATION_CHOICES else SelectionStrategy.LEAST_USED
