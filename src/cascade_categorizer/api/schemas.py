from datetime import datetime

from pydantic import BaseModel, Field

from cascade_categorizer.models import (
    CategorizationFeedback,
    CostTracker,
    FeedbackType,
    LLMModel,
    MerchantPattern,
    RuleType,
)


class TransactionCreate(BaseModel):
    amount: float
    description: str = ""
    merchant_name: str | None = None
    date: datetime | None = None
    id: str | None = None


class RuleCreate(BaseModel):
    category_id: int
    rule_type: RuleType
    pattern: str
    confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    priority: int = Field(default=100, ge=0)
    case_sensitive: bool = False
    is_regex: bool = False


class RuleUpdate(BaseModel):
    category_id: int | None = None
    rule_type: RuleType | None = None
    pattern: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    priority: int | None = Field(default=None, ge=0)
    case_sensitive: bool | None = None
    is_regex: bool | None = None


class RuleTestRequest(BaseModel):
    transaction_ids: list[str] | None = None


class TransactionSelection(BaseModel):
    transaction_ids: list[str] | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    uncategorized_only: bool = True


class BatchEstimateRequest(TransactionSelection):
    strategy: str | None = None


class FeedbackRequest(BaseModel):
    user_id: str
    new_category_id: int
    feedback_type: FeedbackType = FeedbackType.CORRECTION
    old_category_id: int | None = None


class FeedbackResponse(BaseModel):
    feedback: CategorizationFeedback
    pattern: MerchantPattern | None = None
    learning_due: bool = False


class BudgetUpdate(BaseModel):
    monthly_budget: float = Field(ge=0.0)
    daily_budget: float = Field(ge=0.0)


class BudgetResponse(BaseModel):
    tracker: CostTracker
    remaining_daily: float | None = None
    remaining_monthly: float | None = None


class CostSummary(BaseModel):
    tracker: CostTracker
    batches: int
    tokens_used: int
    total_cost: float
    estimated_cost: float


class ModelsResponse(BaseModel):
    models: list[LLMModel]
    default: str


class ClearCacheResponse(BaseModel):
    status: str
    cleared: int


class CategoryCreate(BaseModel):
    id: int = Field(gt=0)
    name: str = Field(min_length=1)
    parent_id: int | None = None
    color: str = "#9e9e9e"
    icon: str = "tag"
