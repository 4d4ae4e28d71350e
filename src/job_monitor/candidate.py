from __future__ import annotations

from pathlib import Path

from job_monitor.log import get_logger

log = get_logger(__name__)

DEFAULT_CANDIDATE_PROFILE = """\
Software engineer with several years of professional experience.
Target roles: junior to mid-level software, backend, frontend or full stack engineering.
Skills: Python, Java, JavaScript, SQL, REST APIs, cloud infrastructure, CI/CD.
"""


def load_candidate_profile(path: Path | None) -> str:
    """Return the candidate profile text, falling back to the built-in default."""
    if path is None:
        return DEFAULT_CANDIDATE_PROFILE
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        log.error("cannot read candidate profile %s, using default: %s", path, exc)
        return DEFAULT_CANDIDATE_PROFILE
    if not text:
        log.warning("candidate profile %s is empty, using default", path)
        return DEFAULT_CANDIDATE_PROFILE
    log.info("candidate profile loaded from %s", path)
    return text
