import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DB_POOL_MIN = int(os.getenv("DB_POOL_MIN", "1"))
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "10"))
DB_SSLMODE = os.getenv("DB_SSLMODE", "require")

SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(59 * 60)))

ALGOD_ADDRESS = os.getenv("ALGORAND_ALGOD_ADDRESS", "")
ALGOD_TOKEN = os.getenv("ALGORAND_ALGOD_TOKEN", "")
SERVICE_MNEMONIC = os.getenv("ALGORAND_SERVICE_MNEMONIC", "")
LEDGER_TX_TIMEOUT_ROUNDS = int(os.getenv("LEDGER_TX_TIMEOUT_ROUNDS", "12"))

ACCOUNT_INDEX_START = int(os.getenv("ACCOUNT_INDEX_START", "10"))
ACCOUNT_FUNDING_MICROALGOS = int(os.getenv("ACCOUNT_FUNDING_MICROALGOS", "1000000"))
ORGANIZER_FUNDING_MICROALGOS = int(os.getenv("ORGANIZER_FUNDING_MICROALGOS", "10000000"))

DEPLOY_CLAIM_TTL_SECONDS = int(os.getenv("DEPLOY_CLAIM_TTL_SECONDS", "300"))

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
