"""Configuration management for the Ad Pod Yield Engine."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent

# Data and log directories
DATA_DIR = PROJECT_ROOT / "data"
LOGS_DIR = PROJECT_ROOT / "logs"

# Outcome sink (one JSON line per executed pod)
OUTCOME_LOG_PATH = os.getenv("OUTCOME_LOG_PATH", str(DATA_DIR / "pod_outcomes.jsonl"))

# =============================================================================
# PLANNER CONFIGURATION
# =============================================================================

# Per-position revenue targets (CPM) used as fallback floors
REVENUE_TARGETS = {
    "preroll": float(os.getenv("REVENUE_TARGET_PREROLL", "8.50")),
    "midroll": float(os.getenv("REVENUE_TARGET_MIDROLL", "12.00")),
    "postroll": float(os.getenv("REVENUE_TARGET_POSTROLL", "6.00")),
}
DEFAULT_REVENUE_TARGET = float(os.getenv("DEFAULT_REVENUE_TARGET", "8.00"))

# Connected TV inventory carries higher floors
CTV_FLOOR_MULTIPLIER = float(os.getenv("CTV_FLOOR_MULTIPLIER", "1.25"))

# Slot bounds enforced on every strategy
MIN_SLOTS = 1
MAX_SLOTS = 3
DEFAULT_SLOT_DURATION = 15
MIN_FLOOR = 0.50
MAX_FLOOR = 50.00
MIN_SLOT_TIMEOUT_MS = 400
MAX_SLOT_TIMEOUT_MS = 3000
DEFAULT_SLOT_TIMEOUT_MS = int(os.getenv("DEFAULT_SLOT_TIMEOUT_MS", "1500"))

# Number of sources picked when a slot has none
TOP_SOURCES_PER_SLOT = 3

# Strategy advisor (external collaborator)
ADVISOR_ENDPOINT = os.getenv("ADVISOR_ENDPOINT", "")
ADVISOR_TIMEOUT_MS = int(os.getenv("ADVISOR_TIMEOUT_MS", "2000"))
ADVISOR_MAX_ATTEMPTS = int(os.getenv("ADVISOR_MAX_ATTEMPTS", "2"))

# =============================================================================
# AUCTION CONFIGURATION
# =============================================================================

# Bid scoring weights
PRICE_WEIGHT = 0.70
FILL_CONFIDENCE_WEIGHT = 0.20
LATENCY_WEIGHT = 0.10
PRICE_NORMALIZER = 20.0  # CPM mapped to a score of 1.0
LATENCY_CEILING_MS = 2000.0  # latency score reaches 0 here

# Second-price rules
CLEARING_INCREMENT = 0.01
SINGLE_BID_HAIRCUT = 0.95

# Timeout multiplier applied when the predictor recommends reduce_timeout
REDUCED_TIMEOUT_FACTOR = float(os.getenv("REDUCED_TIMEOUT_FACTOR", "0.75"))

# Creative retrieval
CREATIVE_FETCH_TIMEOUT = float(os.getenv("CREATIVE_FETCH_TIMEOUT", "2.0"))

# =============================================================================
# LEARNING CONFIGURATION
# =============================================================================

TRAINING_BUFFER_CAPACITY = int(os.getenv("TRAINING_BUFFER_CAPACITY", "10000"))
LEARNING_RATE = float(os.getenv("LEARNING_RATE", "0.1"))
PRICE_EMA_DECAY = 0.95
FILL_RATE_EMA_DECAY = 0.98

# =============================================================================
# FEDERATED EXCHANGES
# =============================================================================

FEDERATED_TIMEOUT_MS = int(os.getenv("FEDERATED_TIMEOUT_MS", "2000"))
FEDERATED_DEFAULT_FLOOR = float(os.getenv("FEDERATED_DEFAULT_FLOOR", "0.50"))

# Credentials are optional; exchanges without one are skipped
EXCHANGE_CREDENTIALS = {
    "google_adx": os.getenv("GOOGLE_ADX_ACCESS_TOKEN", ""),
    "amazon_dsp": os.getenv("AMAZON_DSP_TOKEN", ""),
    "trade_desk": os.getenv("TTD_API_TOKEN", ""),
    "magnite": os.getenv("MAGNITE_API_KEY", ""),
    "pubmatic": os.getenv("PUBMATIC_API_KEY", ""),
    "openx": os.getenv("OPENX_API_KEY", ""),
}

# =============================================================================
# DEFAULT DEMAND SOURCES
# =============================================================================

DEMAND_BASE_URL = os.getenv("DEMAND_BASE_URL", "http://localhost:3000")

DEFAULT_DEMAND_SOURCES = [
    {
        "name": "Google AdX",
        "endpoint": f"{DEMAND_BASE_URL}/api/adx",
        "avg_price": 12.50,
        "fill_rate": 0.85,
        "avg_latency_ms": 950,
        "accepted_durations": [15, 30],
        "competitive_categories": ["automotive", "insurance", "finance"],
        "timeout_ms": 1200,
    },
    {
        "name": "Amazon DSP",
        "endpoint": f"{DEMAND_BASE_URL}/api/real-programmatic?exchange=amazon",
        "avg_price": 11.20,
        "fill_rate": 0.78,
        "avg_latency_ms": 1100,
        "accepted_durations": [15, 30],
        "competitive_categories": ["retail", "ecommerce"],
        "timeout_ms": 1500,
    },
    {
        "name": "The Trade Desk",
        "endpoint": f"{DEMAND_BASE_URL}/api/real-programmatic?exchange=tradedesk",
        "avg_price": 13.80,
        "fill_rate": 0.72,
        "avg_latency_ms": 1200,
        "accepted_durations": [15, 30],
        "competitive_categories": ["cpg", "automotive", "tech"],
        "timeout_ms": 1500,
    },
    {
        "name": "Magnite",
        "endpoint": f"{DEMAND_BASE_URL}/api/real-programmatic?exchange=magnite",
        "avg_price": 9.50,
        "fill_rate": 0.88,
        "avg_latency_ms": 850,
        "accepted_durations": [15, 30],
        "competitive_categories": [],
        "timeout_ms": 1200,
    },
    {
        "name": "PubMatic",
        "endpoint": f"{DEMAND_BASE_URL}/api/real-programmatic?exchange=pubmatic",
        "avg_price": 10.80,
        "fill_rate": 0.82,
        "avg_latency_ms": 900,
        "accepted_durations": [15, 30],
        "competitive_categories": [],
        "timeout_ms": 1200,
    },
    {
        "name": "OpenX",
        "endpoint": f"{DEMAND_BASE_URL}/api/real-programmatic?exchange=openx",
        "avg_price": 8.90,
        "fill_rate": 0.75,
        "avg_latency_ms": 1050,
        "accepted_durations": [15, 30],
        "competitive_categories": [],
        "timeout_ms": 1300,
    },
    {
        "name": "Prebid Server",
        "endpoint": f"{DEMAND_BASE_URL}/api/prebid-server",
        "avg_price": 9.20,
        "fill_rate": 0.80,
        "avg_latency_ms": 1400,
        "accepted_durations": [15, 30],
        "competitive_categories": [],
        "timeout_ms": 1800,
    },
]
