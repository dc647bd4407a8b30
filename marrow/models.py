from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class StrategyType(str, Enum):
    """Ways of relocating an element on a page."""
    SELECTOR = "selector"
    XPATH = "xpath"
    ARIA = "aria"
    DATA_ATTR = "data_attr"
    TEXT_CONTENT = "text_content"


# Most stable first: CSS and data attributes survive redesigns better than text.
STABILITY_ORDER = [
    StrategyType.SELECTOR,
    StrategyType.DATA_ATTR,
    StrategyType.ARIA,
    StrategyType.XPATH,
    StrategyType.TEXT_CONTENT,
]


class Strategy(BaseModel):
    """One concrete way to find an element."""
    type: StrategyType = Field(
        ...,
        description="The method used to identify the element. Prefer 'selector' for CSS, 'data_attr' for data-* attributes."
    )
    value: str = Field(
        ...,
        min_length=1,
        description="The value for the strategy, e.g. CSS '.job-card', XPath '//div[@class=\"job\"]', data attribute 'data-testid=\"job-item\"'"
    )

    def to_locator(self) -> str:
        """Render this strategy as a Playwright selector string."""
        value = self.value.strip()
        if self.type == StrategyType.SELECTOR:
            return value
        if self.type == StrategyType.XPATH:
            return value if value.startswith("xpath=") else f"xpath={value}"
        if self.type == StrategyType.TEXT_CONTENT:
            return value if value.startswith("text=") else f"text={value}"
        if value.startswith("["):
            return value
        if self.type == StrategyType.ARIA:
            if "=" in value:
                return f"[{value}]"
            return f'[aria-label="{value}"]'
        # data_attr: 'data-testid="x"' or a bare attribute name
        return f"[{value}]"


class Element(BaseModel):
    """A named, relocatable element of a page."""
    name: str = Field(
        ...,
        min_length=1,
        description="Semantic name of the element (e.g. 'job_card', 'next_button', 'list_container'). Use snake_case."
    )
    description: str = Field(
        ...,
        description="A brief description of what this element is and its purpose on the page"
    )
    strategies: List[Strategy] = Field(
        ...,
        min_length=2,
        description="At least 2 distinct strategies ordered by stability: CSS selector or data-* attribute first, XPath or text content as fallback"
    )
    confidence_score: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="Confidence between 0 and 1 based on selector stability and uniqueness"
    )

    @field_validator("strategies")
    @classmethod
    def require_distinct_strategies(cls, v):
        distinct = {(s.type, s.value.strip()) for s in v}
        if len(distinct) < 2:
            raise ValueError("at least 2 distinct strategies are required")
        return v

    def ordered_strategies(self) -> List[Strategy]:
        """Strategies sorted by stability, keeping model order within a type."""
        return sorted(self.strategies, key=lambda s: STABILITY_ORDER.index(s.type))

    def locators(self) -> List[str]:
        seen = []
        for strategy in self.ordered_strategies():
            locator = strategy.to_locator()
            if locator and locator not in seen:
                seen.append(locator)
        return seen


def _reject_duplicate_names(elements: List[Element]) -> List[Element]:
    names = [el.name for el in elements]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"element names must be unique, duplicated: {', '.join(duplicates)}")
    return elements


class DiscoveryResponse(BaseModel):
    """Shape the generative model must answer with."""
    domain: str = Field(..., description="The domain of the page being analyzed")
    page_type: str = Field(..., description="The type of page (e.g. 'job_search', 'job_detail')")
    elements: List[Element] = Field(..., description="Semantic elements identified on the page")

    @field_validator("elements")
    @classmethod
    def unique_names(cls, v):
        return _reject_duplicate_names(v)


class PageStructure(BaseModel):
    """The stored map of one normalized URL."""
    id: Optional[int] = None
    domain: str
    url: str
    page_type: str
    elements: List[Element]
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    usage_count: int = 0
    validation_status: Optional[str] = None
    last_validated: Optional[datetime] = None

    @field_validator("elements")
    @classmethod
    def unique_names(cls, v):
        return _reject_duplicate_names(v)

    def element(self, name: str) -> Optional[Element]:
        for el in self.elements:
            if el.name == name:
                return el
        return None


class NormalizedUrl(BaseModel):
    domain: str
    url: str


class PageSnapshot(BaseModel):
    """Bounded capture of a loaded page. Never persisted."""
    html: str
    structure_summary: str


class AuthSignal(BaseModel):
    type: Literal["http_status", "url_redirect", "dom_element"]
    description: str
    weight: float


class AuthDetectionResult(BaseModel):
    required: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    signals: List[AuthSignal] = []
    redirect_chain: List[str] = []
    final_url: str


class SnapshotDebug(BaseModel):
    timings_ms: Dict[str, int]
    final_url: str
    html_length: int
    structure_counts: Dict[str, int] = {}
    auth: Optional[AuthDetectionResult] = None


class SelectorResult(BaseModel):
    selector: str
    found: bool
    text_length: int = 0
    error: Optional[str] = None


class ExtractDebug(BaseModel):
    timings_ms: Dict[str, int]
    final_url: str
    selectors: List[SelectorResult]


class ExtractionResult(BaseModel):
    data: Dict[str, Optional[str]]
    debug: Optional[ExtractDebug] = None


class SelectorCheck(BaseModel):
    selector: str
    found: bool
    value: Optional[str] = None


class ValidationReport(BaseModel):
    valid: bool
    results: List[SelectorCheck]


class SaveResult(BaseModel):
    status: Literal["exists", "created"]
    id: int


class ManifestElement(BaseModel):
    name: str
    description: str


class ManifestPage(BaseModel):
    url: str
    page_type: str
    elements: List[ManifestElement]


class Manifest(BaseModel):
    """Domain index of stored maps without selector detail."""
    domain: str
    pages: List[ManifestPage]


class RegistryStats(BaseModel):
    total_maps: int
    total_requests: int
    top_domains: List[str]


class AnalyticsCounter(BaseModel):
    metric: str
    value: int
    timestamp: datetime


class SessionMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    domain: str
    created_at: int = Field(..., alias="createdAt")
    last_used: int = Field(..., alias="lastUsed")


class StoredSession(BaseModel):
    """On-disk layout of one session file."""
    model_config = ConfigDict(populate_by_name=True)

    metadata: SessionMetadata
    storage_state: Dict[str, Any] = Field(..., alias="storageState")


class EscalationResult(BaseModel):
    success: bool
    domain: str
    session_captured: bool
    error: Optional[str] = None


class MapDebug(BaseModel):
    cache_hit: bool
    forced_refresh: bool = False
    timings_ms: Dict[str, int] = {}
    snapshot: Optional[SnapshotDebug] = None
    save: Optional[SaveResult] = None


class MapResult(BaseModel):
    map: Optional[PageStructure] = None
    debug: MapDebug


class RetryDebug(BaseModel):
    attempts: int
    selectors: List[str]
    element_names: Optional[List[str]] = None
    fallback_applied: bool = False
    fallback_selector_count: int = 0
    extract: Optional[ExtractDebug] = None


class RetryResult(BaseModel):
    """Extraction keyed by selector, or by element name when names were given."""
    data: Dict[str, Optional[str]]
    debug: Optional[RetryDebug] = None
