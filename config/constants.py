"""
Centralized constants for the batch orchestration engine.
Every tunable default lives here; Settings and CoordinatorConfig read from it.
"""

# ===========================================
# BATCH PROCESSING
# ===========================================
BATCH_CHUNK_SIZE = 5                  # units dispatched together per wave
BATCH_STAGE_CONCURRENCY = 4           # in-flight stage calls per stage
BATCH_MAX_FILES = 1000                # inputs accepted per batch
DEFAULT_TRACK_NAME = "main"

# ===========================================
# STAGE ADAPTERS
# ===========================================
STAGE_MAX_ATTEMPTS = 3                # single-call stages
STAGE_RETRY_DELAY_SECONDS = 2.0       # fixed delay between attempts
STAGE_POLL_INTERVAL_SECONDS = 3.0     # remote job status polling
STAGE_POLL_MAX_ATTEMPTS = 10
STAGE_HTTP_TIMEOUT_SECONDS = 30.0

# ===========================================
# REMOTE EXTRACTION
# ===========================================
REMOTE_BASE_URL = "https://api.cloud.llamaindex.ai/api/v1"
REMOTE_AGENT_NAME = "batchflow_extractor"
REMOTE_STATUS_SUCCESS = "SUCCESS"
REMOTE_STATUS_FAILED = "FAILED"

# ===========================================
# PROGRESS / ACTIVITY LOG
# ===========================================
BATCH_LOG_HISTORY = 1000              # entries retained per batch
PROGRESS_RECENT_LOGS = 10             # entries shown in a snapshot

# ===========================================
# RETENTION
# ===========================================
RETENTION_MAX_AGE_SECONDS = None      # None disables the sweep

# ===========================================
# FILE HANDLING
# ===========================================
OUTPUT_DIR = 'data/batch_outputs'
RESULTS_SUBDIR = 'json_results'
REPORT_FILENAME = 'processing_report.json'

# ===========================================
# LOGGING
# ===========================================
LOG_LEVEL = 'INFO'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_FILE = 'logs/batchflow.log'
LOG_MAX_SIZE_MB = 10
LOG_BACKUP_COUNT = 5
