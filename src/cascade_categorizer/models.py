from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class RuleType(str, Enum):
    MERCHANT_PATTERN = "merchant_pattern"
    DESCRIPTION_KEYWORD = "description_keyword"
    AMOUNT_RANGE = "amount_range"
    REGEX_PATTERN = "regex_pattern"


class Method(str, Enum):
    RULE_BASED = "rule_based"
    PATTERN_BASED = "pattern_based"
    RAG_BASED = "rag_based"
    LLM_BASED = "llm_based"
    BUDGET_EXCEEDED = "budget_exceeded"


class FeedbackType(str, Enum):
    CORRECTION = "correction"
    CONFIRMATION = "confirmation"
    REJECTION = "rejection"


class RuleMatch(BaseModel):
    rule_id: str
    rule_type: RuleType
    pattern: str
    confidence: float
    priority: int


class SimilarityMatch(BaseModel):
    transaction_id: str
    category_id: int
    similarity: float
    description: str = ""
    merchant_name: Optional[str] = None
    amount: float = 0.0


class CategorizationResult(BaseModel):
    transaction_id: Optional[str] = None
    category_id: Optional[int] = None
    confidence: float = 0.0
    method: Method
    processing_time_ms: float = 0.0
    cost_estimate: float = 0.0
    explanation: str = ""
    accepted: bool = False  # True only when the category was written to the transaction
    error: Optional[str] = None
    rule_matches: list[RuleMatch] = Field(default_factory=list)
    similarity_matches: list[SimilarityMatch] = Field(default_factory=list)
    pattern_match_type: Optional[str] = None
    matched_pattern: Optional[str] = None  # cache entry behind a pattern_based result
    model_used: Optional[str] = None


class Transaction(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    amount: float
    description: str = ""
    merchant_name: Optional[str] = None
    date: datetime = Field(default_factory=utcnow)
    category_id: Optional[int] = None
    categorization: Optional[CategorizationResult] = None


class Category(BaseModel):
    id: int
    organization_id: str
    name: str
    parent_id: Optional[int] = None
    color: str = "#9e9e9e"
    icon: str = "tag"


class CategoryRule(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    category_id: int
    rule_type: RuleType
    pattern: str
    confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    priority: int = Field(default=100, ge=0)
    case_sensitive: bool = False
    is_regex: bool = False
    usage_count: int = 0
    success_rate: float = 1.0
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


class MerchantPattern(BaseModel):
    organization_id: str
    pattern: str  # normalized merchant name
    category_id: int
    confidence: float
    usage_count: int = 0
    user_corrected: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


class SimilarPattern(BaseModel):
    pattern: str
    category_id: int
    confidence: float
    similarity: float
    usage_count: int


class TransactionEmbedding(BaseModel):
    transaction_id: str
    organization_id: str
    vector: list[float]
    embedding_model: str
    category_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CategorizationFeedback(BaseModel):
    id: str = Field(default_factory=new_id)
    transaction_id: str
    organization_id: str
    user_id: str
    old_category_id: Optional[int] = None
    new_category_id: int
    feedback_type: FeedbackType
    confidence_before: Optional[float] = None
    method_used: Optional[Method] = None
    created_at: datetime = Field(default_factory=utcnow)


class CostTracker(BaseModel):
    organization_id: str
    monthly_budget: float = 50.0
    daily_budget: float = 5.0
    current_spend: float = 0.0  # spend for period_day
    monthly_spend: float = 0.0  # spend for period_month
    transaction_count: int = 0
    avg_cost_per_txn: float = 0.0
    period_day: Optional[date] = None
    period_month: Optional[str] = None  # "YYYY-MM"


class LLMModel(BaseModel):
    name: str
    cost_per_1k_tokens: float
    max_tokens: int
    accuracy_score: float
    is_default: bool = False
    avg_latency_ms: Optional[float] = None


class LLMBatchRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    transaction_count: int
    tokens_used: int
    total_cost: float
    estimated_cost: float
    model_used: str
    success_rate: Optional[float] = None
    avg_confidence: Optional[float] = None
    processing_time_ms: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)


class RuleTestResult(BaseModel):
    rule: CategoryRule
    matched_transactions: int
    accuracy_rate: float
    examples: list[Transaction] = Field(default_factory=list)


class CategoryCorrection(BaseModel):
    from_category_id: Optional[int]
    to_category_id: int
    count: int
    avg_confidence: Optional[float] = None


class ProblematicMerchant(BaseModel):
    merchant: str
    error_rate: float
    occurrences: int
    suggested_rule: Optional[str] = None


class FeedbackAnalysis(BaseModel):
    organization_id: str
    total_feedback: int
    correction_rate: float
    confirmation_rate: float
    rejection_rate: float
    correction_rate_by_method: dict[str, float] = Field(default_factory=dict)
    method_accuracy: dict[str, float] = Field(default_factory=dict)
    common_corrections: list[CategoryCorrection] = Field(default_factory=list)
    problematic_merchants: list[ProblematicMerchant] = Field(default_factory=list)


class CostEstimate(BaseModel):
    transaction_count: int
    llm_candidates: int
    estimated_tokens: int
    estimated_cost: float
    model: str


class BatchReport(BaseModel):
    organization_id: str
    requested: int
    results: list[CategorizationResult] = Field(default_factory=list)
    categorized: int = 0
    sent_to_llm: int = 0
    budget_blocked: int = 0
    cancelled: bool = False
    total_cost: float = 0.0


class CategorizationStats(BaseModel):
    organization_id: str
    total_transactions: int
    categorized_transactions: int
    uncategorized_transactions: int
    user_corrected: int
    by_method: dict[str, int] = Field(default_factory=dict)
    avg_confidence: Optional[float] = None
