import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import yaml
from selenium.webdriver.common.by import By

Selector = Tuple[str, str]

BY_MAP = {
    "ID": By.ID,
    "NAME": By.NAME,
    "XPATH": By.XPATH,
    "CSS": By.CSS_SELECTOR,
    "CSS_SELECTOR": By.CSS_SELECTOR,
    "TAG_NAME": By.TAG_NAME,
    "CLASS_NAME": By.CLASS_NAME,
    "LINK_TEXT": By.LINK_TEXT,
    "PARTIAL_LINK_TEXT": By.PARTIAL_LINK_TEXT,
}
SELECTOR_SUFFIX = "_SELECTORS"

_registry_lock = threading.Lock()
_applied: set = set()


def _parse_entry(item) -> Optional[Selector]:
    """Accept ``{by: ..., value: ...}`` mappings or ``"css: #submit"`` shorthand."""
    if isinstance(item, dict):
        by_name, value = item.get("by", ""), item.get("value", "")
    elif isinstance(item, str) and ":" in item:
        by_name, value = item.split(":", 1)
    else:
        return None

    by = BY_MAP.get(str(by_name).strip().upper())
    value = str(value).strip()
    if by is None or not value:
        return None
    return by, value


def load_selector_registry(path: str = "selectors.yml") -> Dict[str, List[Selector]]:
    registry_path = Path(path)
    if not registry_path.exists():
        return {}

    # JSON documents are valid YAML, so one loader covers both formats.
    try:
        raw = yaml.safe_load(registry_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        logging.warning("Unable to parse selector registry file: %s (%s)", path, exc)
        return {}
    if not isinstance(raw, dict):
        return {}

    parsed: Dict[str, List[Selector]] = {}
    for key, entries in raw.items():
        if not isinstance(entries, list):
            continue
        selectors = [selector for selector in map(_parse_entry, entries) if selector is not None]
        if selectors:
            parsed[str(key).strip()] = selectors
    return parsed


def merge_selectors(overrides: Iterable[Selector], defaults: Iterable[Selector]) -> List[Selector]:
    merged = list(overrides)
    merged.extend(selector for selector in defaults if selector not in merged)
    return merged


def apply_selector_overrides(target_cls, path: str = "selectors.yml") -> Dict[str, int]:
    """Prepend registry selectors to the matching ``*_SELECTORS`` lists of ``target_cls``.

    Applied at most once per class and file. Returns the number of override
    selectors applied per attribute.
    """
    key = (id(target_cls), path)
    with _registry_lock:
        if key in _applied:
            return {}
        _applied.add(key)

    applied: Dict[str, int] = {}
    for name, overrides in load_selector_registry(path).items():
        if not name.endswith(SELECTOR_SUFFIX) or not hasattr(target_cls, name):
            logging.warning("Ignoring selector registry entry %s: no such selector list", name)
            continue
        setattr(target_cls, name, merge_selectors(overrides, getattr(target_cls, name)))
        applied[name] = len(overrides)
        logging.info("Selector registry: %d override(s) for %s", len(overrides), name)
    return applied
