"""
FastAPI web application for the content gap analyzer
"""
from fastapi import FastAPI, HTTPException, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from typing import List, Dict, Any, Optional
import logging
from datetime import datetime
import uvicorn

from app import ContentGapApp
from errors import ContentGapError, TelemetryError
from models import prioritized_keyword_from_dict, stage2_from_dict

logger = logging.getLogger(__name__)


# Pydantic models for API requests
class KeywordPayload(BaseModel):
    keyword: str
    priority_score: float = 0.0
    impressions: int = 0
    clicks: int = 0
    position: float = 0.0
    ctr: float = 0.0


class Step1Request(BaseModel):
    site_identifier: str
    page_url: str
    access_token: Optional[str] = None
    keywords: Optional[List[str]] = None


class Step2Request(BaseModel):
    own_url: str
    keywords: List[KeywordPayload]
    api_preferred: Optional[bool] = None

    @field_validator('keywords')
    @classmethod
    def keywords_must_not_be_empty(cls, v):
        if not v:
            raise ValueError('Keywords list cannot be empty')
        return v


class Step3Request(BaseModel):
    own_url: str
    keywords: List[KeywordPayload]
    stage2: Dict[str, Any]
    locale: str = "ja"
    skip_semantic: bool = False


class AnalyzeRequest(BaseModel):
    site_identifier: str
    page_url: str
    access_token: Optional[str] = None
    keywords: Optional[List[str]] = None
    locale: str = "ja"
    api_preferred: Optional[bool] = None
    skip_semantic: bool = False


# Response models
class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    response_time: Optional[float] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    components: Dict[str, Any]
    semantic_analysis_available: bool
    search_api_available: bool


# Initialize FastAPI app
app = FastAPI(
    title="Content Gap Analyzer API",
    description="Compares a page against the pages that outrank it and explains the gaps",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global application instance
content_gap_app = None


@app.on_event("startup")
async def startup_event():
    """Initialize the application on startup"""
    global content_gap_app
    try:
        content_gap_app = ContentGapApp()
        logger.info("Content gap API started successfully")
    except Exception as e:
        logger.error(f"Failed to initialize content gap app: {e}")
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown"""
    if content_gap_app:
        content_gap_app.shutdown()
        logger.info("Content gap API shut down successfully")


def get_content_gap_app() -> ContentGapApp:
    """Dependency to get the application instance"""
    if content_gap_app is None:
        raise HTTPException(status_code=500, detail="Content gap app not initialized")
    return content_gap_app


def _access_token(requested: Optional[str], gap_app: ContentGapApp) -> str:
    token = requested or gap_app.config.telemetry_access_token
    if not token:
        raise HTTPException(status_code=401, detail="A telemetry access token is required")
    return token


def _to_response(result: Dict[str, Any], done_message: str) -> APIResponse:
    success = result.get("success", False)
    return APIResponse(
        success=success,
        message=done_message if success else result.get("error", "Request failed"),
        data=result.get("data"),
        response_time=result.get("response_time"),
    )


# API Endpoints

@app.get("/", response_model=Dict[str, str])
async def root():
    """Root endpoint"""
    return {
        "message": "Content Gap Analyzer API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health"
    }


@app.get("/health", response_model=HealthResponse)
async def health_check(gap_app: ContentGapApp = Depends(get_content_gap_app)):
    """Health check endpoint"""
    try:
        status = gap_app.get_system_status()
        return HealthResponse(
            status=status["health"]["overall_status"],
            timestamp=datetime.now(),
            components=status["health"]["components"],
            semantic_analysis_available=status["semantic_analysis_available"],
            search_api_available=status["search_api_available"],
        )
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/analyze/step1", response_model=APIResponse)
async def analyze_step1(request: Step1Request, gap_app: ContentGapApp = Depends(get_content_gap_app)):
    """Read telemetry and select keywords"""
    token = _access_token(request.access_token, gap_app)
    logger.info(f"Step 1 for: {request.page_url}")
    result = await gap_app.step1(token, request.site_identifier, request.page_url, request.keywords)
    return _to_response(result, "Keyword selection completed")


@app.post("/analyze/step2", response_model=APIResponse)
async def analyze_step2(request: Step2Request, gap_app: ContentGapApp = Depends(get_content_gap_app)):
    """Discover competing pages for the selected keywords"""
    keywords = [prioritized_keyword_from_dict(k.model_dump()) for k in request.keywords]
    logger.info(f"Step 2 for: {request.own_url} ({len(keywords)} keywords)")
    result = await gap_app.step2(request.own_url, keywords, request.api_preferred)
    return _to_response(result, "Competitor discovery completed")


@app.post("/analyze/step3", response_model=APIResponse)
async def analyze_step3(request: Step3Request, gap_app: ContentGapApp = Depends(get_content_gap_app)):
    """Fetch pages and compare them"""
    keywords = [prioritized_keyword_from_dict(k.model_dump()) for k in request.keywords]
    try:
        stage2 = stage2_from_dict(request.stage2)
    except (KeyError, TypeError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid stage2 payload: {e}")
    logger.info(f"Step 3 for: {request.own_url}")
    result = await gap_app.step3(request.own_url, keywords, stage2, request.locale, request.skip_semantic)
    return _to_response(result, "Content comparison completed")


@app.post("/analyze", response_model=APIResponse)
async def analyze(request: AnalyzeRequest, gap_app: ContentGapApp = Depends(get_content_gap_app)):
    """Run all three steps in one request"""
    token = _access_token(request.access_token, gap_app)
    result = await gap_app.analyze(
        token, request.site_identifier, request.page_url, request.keywords,
        request.locale, request.api_preferred, request.skip_semantic,
    )
    return _to_response(result, "Analysis completed")


@app.get("/pages", response_model=APIResponse)
async def list_pages(
    site_identifier: str = Query(..., description="Property to list pages for"),
    access_token: Optional[str] = Query(None, description="Telemetry access token"),
    gap_app: ContentGapApp = Depends(get_content_gap_app)
):
    """Pages of the property that appeared in search results"""
    token = _access_token(access_token, gap_app)
    result = await gap_app.list_pages(token, site_identifier)
    return _to_response(result, "Pages retrieved successfully")


@app.get("/history", response_model=APIResponse)
async def get_history(
    page_url: str = Query(..., description="Page URL to list analyses for"),
    limit: int = Query(10, ge=1, le=100, description="Number of analyses to return"),
    gap_app: ContentGapApp = Depends(get_content_gap_app)
):
    """Recent analyses for a page"""
    try:
        history = gap_app.get_history(page_url, limit)
        return APIResponse(
            success=True,
            message=f"Retrieved {len(history)} analyses",
            data={"analyses": history, "total": len(history)},
        )
    except Exception as e:
        logger.error(f"Error retrieving history for {page_url}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/metrics", response_model=APIResponse)
async def get_metrics(gap_app: ContentGapApp = Depends(get_content_gap_app)):
    """Get pipeline metrics"""
    try:
        return APIResponse(
            success=True,
            message="Metrics retrieved successfully",
            data={"metrics": gap_app.metrics.snapshot()},
        )
    except Exception as e:
        logger.error(f"Error retrieving metrics: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/cleanup", response_model=APIResponse)
async def cleanup_data(
    days_to_keep: int = Query(30, description="Number of days of data to keep"),
    gap_app: ContentGapApp = Depends(get_content_gap_app)
):
    """Clean up old data"""
    try:
        gap_app.cleanup_old_data(days_to_keep)
        return APIResponse(
            success=True,
            message=f"Data cleanup completed, kept last {days_to_keep} days",
            data={"days_kept": days_to_keep},
        )
    except Exception as e:
        logger.error(f"Error cleaning up data: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.exception_handler(ContentGapError)
async def content_gap_exception_handler(request, exc: ContentGapError):
    logger.error(f"Request failed: {exc}")
    status_code = exc.status if isinstance(exc, TelemetryError) and exc.status else 502
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "message": exc.user_message,
            "timestamp": datetime.now().isoformat()
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "timestamp": datetime.now().isoformat()
        }
    )


def run_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False):
    uvicorn.run("api:app", host=host, port=port, reload=reload, log_level="info")


if __name__ == "__main__":
    run_server(reload=True)
