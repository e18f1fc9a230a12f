# --- Global log sanitizer to stop HTML body spam --------------------------------
# WordPress and the ERP gateway answer errors with full HTML pages; those bodies end
# up in exception messages, log lines and per-SKU result details.
import logging, re

_HTML_SIG_RE = re.compile(r'(?is)<!DOCTYPE html|<html[^>]*>')
_TITLE_RE    = re.compile(r'(?is)<title[^>]*>(.*?)</title>')
_TAG_RE      = re.compile(r'(?is)<[^>]+>')
_SCRIPT_RE   = re.compile(r'(?is)<(script|style)[^>]*>.*?</\1>')

def _strip_tags(s: str) -> str:
    s = _SCRIPT_RE.sub('', s)
    s = _TAG_RE.sub(' ', s)
    return re.sub(r'\s+', ' ', s).strip()

def _summarize_html(s: str, limit: int = 200) -> str:
    title = None
    m = _TITLE_RE.search(s)
    if m:
        title = _strip_tags(m.group(1))
    preview = title or _strip_tags(s)[:limit]
    return f"{preview} [HTML {len(s)} chars trimmed]"

def summarize_body(text: str | None, limit: int = 200) -> str:
    """Short, log-safe form of an upstream response body or error string."""
    text = text or ""
    if _HTML_SIG_RE.search(text):
        return _summarize_html(text, limit)
    text = re.sub(r'\s+', ' ', text).strip()
    return text if len(text) <= limit else text[:limit] + "..."

class _HtmlTrimFilter(logging.Filter):
    """If a log message contains a large HTML blob, replace it with a short summary."""
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
            if isinstance(msg, str) and len(msg) > 200 and _HTML_SIG_RE.search(msg):
                record.msg = _summarize_html(msg)
                record.args = ()
        except Exception:
            pass
        return True

def install_html_trim_filter() -> None:
    # root + uvicorn family + our own tree
    for _name in ("", "uvicorn", "uvicorn.error", "stocksync"):
        logger = logging.getLogger(_name)
        if not any(isinstance(f, _HtmlTrimFilter) for f in logger.filters):
            logger.addFilter(_HtmlTrimFilter())
