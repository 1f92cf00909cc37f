"""Tag catalogue APIs."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.deps import get_current_user, get_db
from app.db.models import User
from app.schemas.ticketing import SuccessResponse, TagCreate, TagRead
from app.services import tag_service

router = APIRouter(prefix="/tags", tags=["Tags"])


@router.get("", response_model=list[TagRead])
def list_tags(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return tag_service.list_tags(db)


@router.post("", response_model=TagRead, status_code=201)
def create_tag(
    data: TagCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return tag_service.create_tag(db, data.name)


@router.delete("/{tag_id}", response_model=SuccessResponse)
def delete_tag(
    tag_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    tag_service.delete_tag(db, tag_id)
    return SuccessResponse()
