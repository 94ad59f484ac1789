import os

def _canon_prefix(val):
    """
    Normalize API prefix to always be exactly like '/api':
      - defaults to '/api' when unset/empty
      - ensures a single leading slash
      - removes any trailing slash (except for root)
    """
    val = (val or "/api").strip()
    if not val.startswith("/"):
        val = "/" + val
    if len(val) > 1 and val.endswith("/"):
        val = val[:-1]
    return val


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


API_PREFIX = _canon_prefix(os.getenv("API_PREFIX"))

# Re-read persisted ratings after a recalculation and log any drift from the
# computed ledger. Never fails the request.
RECALC_VERIFY_READBACK = _env_flag("RECALC_VERIFY_READBACK", True)

RATE_LIMITS_DISABLED = _env_flag("DISABLE_RATE_LIMITS", False)
