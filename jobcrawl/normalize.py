import re
from urllib.parse import urljoin


_DATE_DMY = re.compile(r"(\d{2})/(\d{2})/(\d{4})")
_EMAIL = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")


def standardize_date(value: str) -> str:
    """Rewrite the first DD/MM/YYYY date in ``value`` as YYYY-MM-DD.

    Anything without such a date is returned stripped but otherwise untouched.
    """
    value = (value or "").strip()
    match = _DATE_DMY.search(value)
    if not match:
        return value
    day, month, year = match.groups()
    return f"{year}-{month}-{day}"


def validate_email(value: str) -> bool:
    return bool(_EMAIL.fullmatch((value or "").strip()))


def clean_email(value: str) -> str:
    value = (value or "").strip()
    if value.lower().startswith("mailto:"):
        value = value[len("mailto:"):].split("?", 1)[0]
    return value if validate_email(value) else ""


def make_absolute_url(base_url: str, link: str) -> str:
    link = (link or "").strip()
    if not link:
        return ""
    return urljoin(base_url, link)
