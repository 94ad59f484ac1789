from fastapi import APIRouter

from ..schemas import RatingPreviewIn, RatingPreviewOut
from ..services.rating import preview

router = APIRouter(prefix="/ratings", tags=["ratings"])


@router.post("/preview", response_model=RatingPreviewOut)
async def rating_preview(body: RatingPreviewIn) -> RatingPreviewOut:
    """Show what a match would do to a rating, using the same K-factor as replay."""
    return RatingPreviewOut(**preview(body.rating, body.opponent_rating, body.matches_played))
