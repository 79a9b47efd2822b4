from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from typing import List, Optional, Union
from sqlalchemy.orm import Session
from examprep.core.database import get_db
from examprep.core.auth import get_current_user_id
from examprep.core.errors import NotFoundError
from examprep.models.orm import MockExam
from examprep.services.catalog import ContentCatalog, get_catalog
from examprep.services.exam_session import MockExamService, AnswerSubmission

router = APIRouter()


class StartRequest(BaseModel):
    examId: Optional[int] = None
    language: Optional[str] = None


class DecisionRequest(BaseModel):
    choice: Union[int, str, None] = None
    language: Optional[str] = None


class AnswerIn(BaseModel):
    sectionType: str
    mode: str = "Speaking"
    questionId: Union[str, int]
    answerText: Optional[str] = ""
    audioUrl: Optional[str] = ""


class AnswersSubmit(BaseModel):
    answers: List[AnswerIn]


class AnswersStored(BaseModel):
    ok: bool
    count: int


class AnswerDeleted(BaseModel):
    ok: bool
    deletedId: int


class Ack(BaseModel):
    ok: bool


class ListeningStartRequest(BaseModel):
    path: Optional[str] = None
    speakingExamId: Optional[int] = None
    language: Optional[str] = None


class ListeningDecisionRequest(BaseModel):
    choice: Optional[str] = Field(default=None)
    language: Optional[str] = None


def owned_exam(exam_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)) -> MockExam:
    """Resolved before the body is validated, so a foreign session is 404 whatever the payload."""
    exam = db.get(MockExam, exam_id)
    if exam is None or exam.user_id != user_id:
        raise NotFoundError("Exam not found")
    return exam


def get_exam_service(db: Session = Depends(get_db), catalog: ContentCatalog = Depends(get_catalog)) -> MockExamService:
    return MockExamService(db, catalog)


@router.get("/history")
def exam_history(user_id: int = Depends(get_current_user_id), svc: MockExamService = Depends(get_exam_service)):
    return svc.fetch_history(user_id)


@router.get("/{exam_id}", dependencies=[Depends(owned_exam)])
def exam_detail(exam_id: int, user_id: int = Depends(get_current_user_id),
                svc: MockExamService = Depends(get_exam_service)):
    return svc.fetch_detail(exam_id, user_id)


@router.post("/mock/start")
def start_mock(payload: Optional[StartRequest] = None, user_id: int = Depends(get_current_user_id),
               svc: MockExamService = Depends(get_exam_service)):
    payload = payload or StartRequest()
    return svc.start(user_id, payload.language, payload.examId)


@router.post("/mock/start/listening")
def start_listening(payload: Optional[ListeningStartRequest] = None, user_id: int = Depends(get_current_user_id),
                    svc: MockExamService = Depends(get_exam_service)):
    payload = payload or ListeningStartRequest()
    return svc.start_listening(user_id, payload.language, payload.path, payload.speakingExamId)


@router.post("/mock/{exam_id}/decision", dependencies=[Depends(owned_exam)])
def decide(exam_id: int, payload: DecisionRequest, user_id: int = Depends(get_current_user_id),
           svc: MockExamService = Depends(get_exam_service)):
    return svc.decision(exam_id, user_id, payload.choice, payload.language)


@router.post("/mock/{exam_id}/listening/decision", dependencies=[Depends(owned_exam)])
def decide_listening(exam_id: int, payload: ListeningDecisionRequest, user_id: int = Depends(get_current_user_id),
                     svc: MockExamService = Depends(get_exam_service)):
    return svc.listening_decision(exam_id, user_id, payload.choice, payload.language)


@router.post("/mock/{exam_id}/answer", response_model=AnswersStored, dependencies=[Depends(owned_exam)])
def submit_answers(exam_id: int, payload: AnswersSubmit, user_id: int = Depends(get_current_user_id),
                   svc: MockExamService = Depends(get_exam_service)):
    answers = [AnswerSubmission(level=a.sectionType, mode=a.mode, question_id=str(a.questionId),
                                answer_text=a.answerText or "", audio_url=a.audioUrl or "") for a in payload.answers]
    return svc.submit_answers(exam_id, user_id, answers)


@router.delete("/mock/{exam_id}/answer/{section_type}/{question_id}", response_model=AnswerDeleted,
               dependencies=[Depends(owned_exam)])
def delete_answer(exam_id: int, section_type: str, question_id: str, mode: str = Query("Speaking"),
                  user_id: int = Depends(get_current_user_id), svc: MockExamService = Depends(get_exam_service)):
    return svc.delete_latest_answer(exam_id, user_id, section_type, question_id, mode)


@router.post("/mock/{exam_id}/complete", response_model=Ack, dependencies=[Depends(owned_exam)])
def complete_exam(exam_id: int, user_id: int = Depends(get_current_user_id),
                  svc: MockExamService = Depends(get_exam_service)):
    return svc.complete(exam_id, user_id)
