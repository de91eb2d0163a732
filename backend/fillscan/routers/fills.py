import asyncio
import logging

from fastapi import APIRouter, HTTPException

from fillscan.errors import DrumTrackNotFoundError, InvalidChartError, InvalidConfigError
from fillscan.models.fill import ExtractionSummary, FillRequest, FillSegment, SegmentValidation
from fillscan.services.extractor import create_extraction_summary, extract_fills, validate_fill_segments

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/fills", tags=["fills"])


def _summarize(request: FillRequest) -> ExtractionSummary:
    segments = extract_fills(request.chart, config=request.config, song_id=request.song_id)
    return create_extraction_summary(request.chart, segments, request.config)


@router.post("", response_model=ExtractionSummary)
async def extract(request: FillRequest):
    """Detect fills in the chart's drum track and summarize them."""
    try:
        return await asyncio.to_thread(_summarize, request)
    except DrumTrackNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (InvalidConfigError, InvalidChartError) as e:
        logger.info(f"Rejected extraction request: {e}")
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/validate", response_model=SegmentValidation)
async def validate(segments: list[FillSegment]):
    """Check a segment list for inverted ranges, overlaps and bad scores."""
    return validate_fill_segments(segments)
