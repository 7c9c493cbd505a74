import os
from dataclasses import dataclass, fields

from dotenv import find_dotenv, load_dotenv

from cascade_categorizer.logger import get_logger

logger = get_logger(__name__)


CONFIG_FILENAME = "config.yaml"

_CONFIG_FILE_PATH: str | None = None
_CONFIG_FILE_VALUES: dict[str, str] = {}
_EXTERNAL_ENV_KEYS: set[str] = set()

_CONFIG_KEYS = (
    "LOG_LEVEL",
    "CASCADE_LOG_LEVEL",
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
    "OPENAI_TIMEOUT",
    "EMBEDDING_MODEL",
    "RULE_THRESHOLD",
    "PATTERN_THRESHOLD",
    "RAG_THRESHOLD",
    "PATTERN_LEARN_FLOOR",
    "PATTERN_FUZZY_THRESHOLD",
    "RAG_TOP_K",
    "RAG_MIN_SIMILARITY",
    "RAG_MIN_VOTE_SHARE",
    "LLM_STRATEGY",
    "LLM_MAX_BATCH_SIZE",
    "LLM_AVG_TOKENS_PER_TRANSACTION",
    "LLM_USE_RAG",
    "DEFAULT_MONTHLY_BUDGET",
    "DEFAULT_DAILY_BUDGET",
    "FEEDBACK_LEARNING_TRIGGER",
    "CORRECTED_MERCHANT_ORDER",
    "DATA_DIR",
    "LOG_DIR",
)


def _resolve_dotenv_path() -> str | None:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        candidate = os.path.join(config_dir, ".env")
        if os.path.exists(candidate):
            return candidate
    resolved = find_dotenv(usecwd=True)
    return resolved or None


def _resolve_config_path() -> str:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        return os.path.join(config_dir, CONFIG_FILENAME)
    cwd = os.getcwd()
    candidate = os.path.join(cwd, "config", CONFIG_FILENAME)
    if os.path.exists(candidate):
        return candidate
    return os.path.join(cwd, CONFIG_FILENAME)


def _strip_inline_comment(raw_value: str) -> str:
    in_single = False
    in_double = False
    for index, char in enumerate(raw_value):
        if char == '"' and not in_single:
            in_double = not in_double
        elif char == "'" and not in_double:
            in_single = not in_single
        elif char == "#" and not in_single and not in_double:
            return raw_value[:index].rstrip()
    return raw_value


def _unquote_value(raw_value: str) -> str:
    if len(raw_value) >= 2 and raw_value[0] == raw_value[-1] and raw_value[0] in {'"', "'"}:
        return raw_value[1:-1]
    return raw_value


def read_config_file(path: str | None) -> dict[str, str]:
    """Read the flat ``KEY: value`` pairs of config.yaml."""
    if not path or not os.path.exists(path):
        return {}

    values: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or ":" not in stripped:
                continue
            key, raw_value = stripped.split(":", 1)
            key = key.strip()
            value = _unquote_value(_strip_inline_comment(raw_value).strip())
            if key and value:
                values[key] = value
    return values


def load_environment() -> None:
    global _CONFIG_FILE_PATH
    global _CONFIG_FILE_VALUES
    global _EXTERNAL_ENV_KEYS

    dotenv_path = _resolve_dotenv_path()
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    _EXTERNAL_ENV_KEYS = set(os.environ.keys())

    _CONFIG_FILE_PATH = _resolve_config_path()
    _CONFIG_FILE_VALUES = read_config_file(_CONFIG_FILE_PATH)

    for key in _CONFIG_KEYS:
        if key not in os.environ and key in _CONFIG_FILE_VALUES:
            os.environ[key] = _CONFIG_FILE_VALUES[key]


def get_config_path() -> str | None:
    return _CONFIG_FILE_PATH


def is_env_override(name: str) -> bool:
    return name in _EXTERNAL_ENV_KEYS


def ensure_dirs(*paths: str | None) -> None:
    for path in paths:
        if path and path not in {".", "./"}:
            os.makedirs(path, exist_ok=True)


def get_env_int(name: str, default: int, min_value: int | None = None) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning(
            "[ENV] %s='%s' below minimum %s, using default %s.",
            name,
            raw,
            min_value,
            default,
        )
        return default
    return value


def get_env_float(
    name: str,
    default: float = 0.0,
    min_value: float | None = None,
    max_value: float | None = None,
) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if (min_value is not None and value < min_value) or (max_value is not None and value > max_value):
        logger.warning(
            "[ENV] %s='%s' outside [%s, %s], using default %s.",
            name,
            raw,
            min_value,
            max_value,
            default,
        )
        return default
    return value


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def get_env_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    if raw not in choices:
        logger.warning("[ENV] %s='%s' not one of %s, using default %s.", name, raw, choices, default)
        return default
    return raw


CORRECTED_MERCHANT_ORDERS = ("rule_first", "pattern_first")
LLM_STRATEGIES = ("cost", "speed", "accuracy", "balanced", "default")


@dataclass(frozen=True)
class CascadeConfig:
    rule_threshold: float = 0.90
    pattern_threshold: float = 0.80
    rag_threshold: float = 0.70
    pattern_learn_floor: float = 0.75
    pattern_fuzzy_threshold: float = 85.0
    rag_top_k: int = 5
    rag_min_similarity: float = 0.75
    rag_min_vote_share: float = 0.6
    embedding_model: str = "text-embedding-3-small"
    llm_strategy: str = "cost"
    llm_max_batch_size: int = 100
    llm_avg_tokens_per_transaction: int = 150
    llm_use_rag: bool = False
    default_monthly_budget: float = 50.0
    default_daily_budget: float = 5.0
    feedback_learning_trigger: int = 20
    corrected_merchant_order: str = "rule_first"

    @classmethod
    def from_env(cls) -> "CascadeConfig":
        return cls(
            rule_threshold=get_env_float("RULE_THRESHOLD", cls.rule_threshold, 0.0, 1.0),
            pattern_threshold=get_env_float("PATTERN_THRESHOLD", cls.pattern_threshold, 0.0, 1.0),
            rag_threshold=get_env_float("RAG_THRESHOLD", cls.rag_threshold, 0.0, 1.0),
            pattern_learn_floor=get_env_float("PATTERN_LEARN_FLOOR", cls.pattern_learn_floor, 0.0, 1.0),
            pattern_fuzzy_threshold=get_env_float(
                "PATTERN_FUZZY_THRESHOLD", cls.pattern_fuzzy_threshold, 0.0, 100.0
            ),
            rag_top_k=get_env_int("RAG_TOP_K", cls.rag_top_k, min_value=1),
            rag_min_similarity=get_env_float("RAG_MIN_SIMILARITY", cls.rag_min_similarity, 0.0, 1.0),
            rag_min_vote_share=get_env_float("RAG_MIN_VOTE_SHARE", cls.rag_min_vote_share, 0.0, 1.0),
            embedding_model=os.getenv("EMBEDDING_MODEL") or cls.embedding_model,
            llm_strategy=get_env_choice("LLM_STRATEGY", cls.llm_strategy, LLM_STRATEGIES),
            llm_max_batch_size=get_env_int("LLM_MAX_BATCH_SIZE", cls.llm_max_batch_size, min_value=1),
            llm_avg_tokens_per_transaction=get_env_int(
                "LLM_AVG_TOKENS_PER_TRANSACTION", cls.llm_avg_tokens_per_transaction, min_value=1
            ),
            llm_use_rag=get_env_bool("LLM_USE_RAG", cls.llm_use_rag),
            default_monthly_budget=get_env_float("DEFAULT_MONTHLY_BUDGET", cls.default_monthly_budget, 0.0),
            default_daily_budget=get_env_float("DEFAULT_DAILY_BUDGET", cls.default_daily_budget, 0.0),
            feedback_learning_trigger=get_env_int(
                "FEEDBACK_LEARNING_TRIGGER", cls.feedback_learning_trigger, min_value=1
            ),
            corrected_merchant_order=get_env_choice(
                "CORRECTED_MERCHANT_ORDER", cls.corrected_merchant_order, CORRECTED_MERCHANT_ORDERS
            ),
        )

    def as_dict(self) -> dict[str, object]:
        return {field.name: getattr(self, field.name) for field in fields(self)}


_SENSITIVE_ENV_KEYS = (
    "KEY",
    "TOKEN",
    "SECRET",
    "PASSWORD",
    "AUTH",
    "PRIVATE",
)


def _mask_env_value(name: str, value: str) -> str:
    sanitized = value.replace("\r", "\\r").replace("\n", "\\n")
    sensitive = any(marker in name.upper() for marker in _SENSITIVE_ENV_KEYS)
    if not sensitive and not sanitized.startswith(("sk-", "rk-", "Bearer ", "bearer ")):
        return sanitized
    if len(sanitized) <= 4:
        return "****"
    return f"{sanitized[:2]}...{sanitized[-2:]}"


def log_environment() -> None:
    logger.info("[ENV] Logging configured environment variables (masked where needed).")
    for key in _CONFIG_KEYS:
        raw_value = os.getenv(key)
        value = "<unset>" if raw_value is None else _mask_env_value(key, raw_value)
        logger.info("[ENV] %s=%s", key, value)


load_environment()

DATA_DIR = os.getenv("DATA_DIR", ".")
LOG_DIR = os.getenv("LOG_DIR")
CONFIG_DIR = os.getenv("CONFIG_DIR")

ensure_dirs(DATA_DIR, LOG_DIR, CONFIG_DIR)
