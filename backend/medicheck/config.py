# backend/medicheck/config.py
import os
from dotenv import load_dotenv

load_dotenv()

RXNAV_BASE = os.getenv("RXNAV_BASE", "https://rxnav.nlm.nih.gov/REST")
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

# Any OpenAI-compatible chat-completions gateway
LLM_GATEWAY_URL = os.getenv("LLM_GATEWAY_URL", "https://api.openai.com/v1")
LLM_API_KEY = os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o")

ANALYSIS_DEADLINE_SECONDS = float(os.getenv("ANALYSIS_DEADLINE_SECONDS", "30"))
RETRY_ATTEMPTS = int(os.getenv("RETRY_ATTEMPTS", "2"))

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./medicheck_history.db")
HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", "10"))
