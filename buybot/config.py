# buybot/config.py
import os

# --- Telegram ---
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN") or os.getenv("TELEGRAM_TOKEN")
ADMIN_IDS = {int(s.strip()) for s in os.getenv("ADMIN_IDS", "").split(',') if s.strip().lstrip('-').isdigit()}
# Webhook mode is used when WEBHOOK_URL is set, long polling otherwise
WEBHOOK_URL = os.getenv("WEBHOOK_URL", "").strip().rstrip('/')
WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", os.getenv("PORT", "8443")))
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "").strip() or None

# --- Chain ---
TOKEN_ADDRESS = os.getenv("TOKEN_ADDRESS", "").strip()
SOLANA_RPC_ENDPOINT = os.getenv("SOLANA_RPC_ENDPOINT") or os.getenv("SOLANA_RPC_URL") or "https://api.mainnet-beta.solana.com"
SOL_MINT = "So11111111111111111111111111111111111111112"
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", 10))
SIGNATURE_FETCH_LIMIT = int(os.getenv("SIGNATURE_FETCH_LIMIT", 10))
POLL_TIMEOUT_SECONDS = float(os.getenv("POLL_TIMEOUT_SECONDS", "25"))
RPC_TIMEOUT_SECONDS = float(os.getenv("RPC_TIMEOUT_SECONDS", "20"))
RPC_CONCURRENCY = int(os.getenv("RPC_CONCURRENCY", "2"))
RPC_DELAY_SECONDS = float(os.getenv("RPC_DELAY_SECONDS", "0.2"))

# --- Market data (DexScreener) ---
DEX_TOKEN_URL = "https://api.dexscreener.com/latest/dex/tokens/{address}"
DEX_TIMEOUT_SECONDS = float(os.getenv("DEX_TIMEOUT_SECONDS", "10"))
DEX_TTL_SECONDS = int(os.getenv("DEX_TTL_SECONDS", "60"))
SOL_PRICE_TTL_SECONDS = int(os.getenv("SOL_PRICE_TTL_SECONDS", "60"))

# --- Rate limiting ---
CHAT_RATE_LIMIT = int(os.getenv("CHAT_RATE_LIMIT", "5"))
MARKET_RATE_LIMIT = int(os.getenv("MARKET_RATE_LIMIT", "5"))
RATE_LIMIT_INTERVAL_SECONDS = float(os.getenv("RATE_LIMIT_INTERVAL_SECONDS", "1"))
RATE_LIMIT_BLOCKING = os.getenv("RATE_LIMIT_BLOCKING", "1") == "1"
RATE_LIMIT_MAX_WAIT = float(os.getenv("RATE_LIMIT_MAX_WAIT", "5"))

# --- Delivery / rendering ---
SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", "15"))
MAX_EMOJIS = int(os.getenv("MAX_EMOJIS", "100"))
EXPLORER_TX_URL = os.getenv("EXPLORER_TX_URL", "https://solscan.io/tx/{signature}")
EXPLORER_ACCOUNT_URL = os.getenv("EXPLORER_ACCOUNT_URL", "https://solscan.io/account/{address}")
BUY_URL_TEMPLATE = os.getenv("BUY_URL_TEMPLATE", "https://jup.ag/swap/SOL-{address}")

# --- Files / lifecycle ---
SETTINGS_FILE = os.getenv("SETTINGS_FILE", "bot_settings.json")
LOCK_FILE = os.getenv("LOCK_FILE", "bot.lock")
CONVERSATION_TIMEOUT_SECONDS = int(os.getenv("CONVERSATION_TIMEOUT_SECONDS", "300"))
DRAIN_TIMEOUT_SECONDS = float(os.getenv("DRAIN_TIMEOUT_SECONDS", "10"))

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING").upper()
DEBUG_VERBOSE = os.getenv("DEBUG_VERBOSE", "0") == "1"
