import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from selenium import webdriver
from selenium.common.exceptions import (
    ElementNotInteractableException,
    StaleElementReferenceException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait
from webdriver_manager.chrome import ChromeDriverManager

from browser_session import build_chrome_options
from errors import ActionTargetMissing
from selector_registry import Selector

ARTIFACTS_DIR = Path("artifacts")

CONTENT_TYPE_SUFFIXES = {
    "image/png": ".png",
    "text/html": ".html",
    "application/json": ".json",
    "text/plain": ".txt",
}


def _css_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _xpath_string(value: str) -> str:
    if '"' not in value:
        return f'"{value}"'
    if "'" not in value:
        return f"'{value}'"
    parts = value.split('"')
    return "concat(" + ", '\"', ".join(f'"{part}"' for part in parts) + ")"


def to_dom_selector(by: str, value: str) -> List[str]:
    """Express a WebDriver locator as the CSS or XPath query the dispatch script runs."""
    if by in (By.CSS_SELECTOR, By.XPATH):
        return [by, value]
    if by == By.ID:
        return [By.CSS_SELECTOR, f"[id={_css_string(value)}]"]
    if by == By.NAME:
        return [By.CSS_SELECTOR, f"[name={_css_string(value)}]"]
    if by == By.CLASS_NAME:
        return [By.CSS_SELECTOR, f"[class~={_css_string(value)}]"]
    if by == By.TAG_NAME:
        return [By.CSS_SELECTOR, value]
    if by == By.LINK_TEXT:
        return [By.XPATH, f"//a[normalize-space(.)={_xpath_string(value.strip())}]"]
    if by == By.PARTIAL_LINK_TEXT:
        return [By.XPATH, f"//a[contains(., {_xpath_string(value)})]"]
    raise ValueError(f"Unsupported locator strategy {by!r}")

# Runs inside the page so the click is timed by the browser's own event loop
# rather than by a WebDriver round trip.
DISPATCH_SCRIPT = """
const selectors = arguments[0];
const delay = arguments[1];
const done = arguments[arguments.length - 1];
let target = null;
for (const [by, value] of selectors) {
    try {
        if (by === 'xpath') {
            target = document.evaluate(
                value, document, null, XPathResult.FIRST_ORDERED_NODE_TYPE, null
            ).singleNodeValue;
        } else {
            target = document.querySelector(value);
        }
    } catch (err) {
        target = null;
    }
    if (target) {
        break;
    }
}
if (!target) {
    done({error: 'Button not found'});
    return;
}
const click = () => {
    target.click();
    done({clicked: true, delay: delay});
};
if (delay <= 0) {
    click();
} else {
    setTimeout(click, delay);
}
"""


class ArtifactStore:
    """Diagnostics written under one directory per run."""

    def __init__(self, root: Union[str, Path] = ARTIFACTS_DIR, *, run_id: Optional[str] = None) -> None:
        run_id = run_id or datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        self.root = Path(root)
        self.run_dir = self.root / run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.saved: List[str] = []

    def path_for(self, name: str, content_type: str) -> Path:
        safe_name = name.replace(" ", "_").replace("/", "_")
        return self.run_dir / f"{safe_name}{CONTENT_TYPE_SUFFIXES.get(content_type, '.bin')}"

    def save(self, name: str, blob: Union[str, bytes], content_type: str) -> Optional[Path]:
        path = self.path_for(name, content_type)
        try:
            if isinstance(blob, bytes):
                path.write_bytes(blob)
            else:
                path.write_text(blob, encoding="utf-8")
        except OSError as exc:
            logging.debug("Failed to persist artifact %s: %s", name, exc)
            return None

        if name not in self.saved:
            self.saved.append(name)
        return path

    def prune_runs(self, keep: int = 20) -> int:
        """Remove the oldest run directories beyond ``keep``."""
        runs = sorted((entry for entry in self.root.iterdir() if entry.is_dir()), key=lambda entry: entry.name)
        stale = [entry for entry in runs[:-keep] if entry != self.run_dir] if keep > 0 else []
        for entry in stale:
            shutil.rmtree(entry, ignore_errors=True)
        if stale:
            logging.debug("Pruned %d old artifact runs", len(stale))
        return len(stale)


class SeleniumPageAutomation:
    CONFIRMATION_SELECTORS: List[Selector] = [
        (By.NAME, "confirmationNumber"),
        (By.ID, "confirmationNumber"),
        (By.CSS_SELECTOR, "input[name*='confirmation' i]"),
    ]

    FIRST_NAME_SELECTORS: List[Selector] = [
        (By.NAME, "passengerFirstName"),
        (By.NAME, "firstName"),
        (By.CSS_SELECTOR, "input[name*='first' i]"),
    ]

    LAST_NAME_SELECTORS: List[Selector] = [
        (By.NAME, "passengerLastName"),
        (By.NAME, "lastName"),
        (By.CSS_SELECTOR, "input[name*='last' i]"),
    ]

    FORM_READY_SELECTORS: List[Selector] = [
        (By.CSS_SELECTOR, "input[name='confirmationNumber']"),
        (By.CSS_SELECTOR, "form"),
    ]

    SUBMIT_SELECTORS: List[Selector] = [
        (By.CSS_SELECTOR, "button[type='submit']"),
        (By.XPATH, "//button[contains(translate(., 'CHECKIN', 'checkin'), 'check in')]"),
        (By.CSS_SELECTOR, ".button--yellow"),
    ]

    TEXT_INPUT_CSS = "input[type='text'], input:not([type='hidden']):not([type='submit']):not([type='button'])"

    def __init__(
        self,
        artifact_store: ArtifactStore,
        *,
        headless: bool = True,
        proxy_server: Optional[str] = None,
        user_agent: Optional[str] = None,
        page_load_timeout: int = 30,
        driver_factory: Optional[Callable[[], webdriver.Chrome]] = None,
    ) -> None:
        self.artifact_store = artifact_store
        self.headless = headless
        self.proxy_server = proxy_server
        self.user_agent = user_agent
        self.page_load_timeout = page_load_timeout
        self._driver_factory = driver_factory
        self.driver: Optional[webdriver.Chrome] = None

    # ------------------------------------------------------------------
    # Driver lifecycle helpers
    # ------------------------------------------------------------------
    def ensure_driver(self) -> webdriver.Chrome:
        if self.driver is not None:
            return self.driver

        if self._driver_factory is not None:
            driver = self._driver_factory()
        else:
            options = build_chrome_options(
                headless=self.headless,
                proxy_server=self.proxy_server,
                user_agent=self.user_agent,
            )
            service = Service(ChromeDriverManager().install())
            try:
                driver = webdriver.Chrome(service=service, options=options)
            except WebDriverException as exc:
                logging.error("Failed to start Chrome driver: %s", exc)
                raise

            try:
                driver.execute_cdp_cmd(
                    "Page.addScriptToEvaluateOnNewDocument",
                    {"source": "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"},
                )
            except WebDriverException:
                logging.debug("Unable to tweak navigator.webdriver; continuing anyway.")

        driver.set_page_load_timeout(self.page_load_timeout)
        driver.implicitly_wait(0)
        self.driver = driver
        logging.info("Chrome driver initialized (headless=%s, proxy=%s)", self.headless, bool(self.proxy_server))
        return driver

    def close(self) -> None:
        if self.driver is None:
            return
        try:
            self.driver.quit()
        except WebDriverException:
            logging.debug("Driver quit raised; ignoring to continue cleanup.")
        finally:
            self.driver = None

    # ------------------------------------------------------------------
    # Page operations
    # ------------------------------------------------------------------
    def navigate(self, url: str, *, attempts: int = 2) -> None:
        driver = self.ensure_driver()
        last_exc: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                driver.get(url)
                self._wait_for_page_ready(driver)
                logging.info("Loaded %s", url)
                return
            except (WebDriverException, TimeoutException) as exc:
                last_exc = exc
                logging.warning("Navigation error for %s (attempt %s/%s): %s", url, attempt, attempts, exc)
        if last_exc:
            raise last_exc

    def wait_for_form(self, timeout: int = 10) -> None:
        if self._find_element(self.FORM_READY_SELECTORS, wait_time=timeout) is None:
            raise ActionTargetMissing("Check-in form did not appear - the page layout may have changed")

    def fill_field(self, selectors: Sequence[Selector], value: str, *, position: Optional[int] = None) -> None:
        element = self._find_element(selectors, wait_time=2)
        if element is None and position is not None:
            element = self._nth_text_input(position)
        if element is None:
            raise ActionTargetMissing(f"Input for {selectors[0][1]!r} not found")

        self._scroll_into_view(element)
        try:
            element.click()
        except (ElementNotInteractableException, StaleElementReferenceException):
            logging.debug("Click before typing failed; typing anyway")
        element.clear()
        element.send_keys(value)

    def fill_form(self, confirmation_number: str, first_name: str, last_name: str) -> None:
        self.fill_field(self.CONFIRMATION_SELECTORS, confirmation_number, position=0)
        logging.info("Filled confirmation number")
        self.fill_field(self.FIRST_NAME_SELECTORS, first_name, position=1)
        logging.info("Filled first name")
        self.fill_field(self.LAST_NAME_SELECTORS, last_name, position=2)
        logging.info("Filled last name")

    def dispatch_action(self, selectors: Optional[Sequence[Selector]] = None, delay_ms: float = 0) -> dict:
        driver = self.ensure_driver()
        delay = max(0, int(round(delay_ms)))
        driver.set_script_timeout(max(30, delay / 1000.0 + 10))
        chosen = list(selectors or self.SUBMIT_SELECTORS)
        result = driver.execute_async_script(DISPATCH_SCRIPT, [to_dom_selector(*selector) for selector in chosen], delay)
        if not isinstance(result, dict) or result.get("error"):
            error = result.get("error") if isinstance(result, dict) else "no response from page"
            raise ActionTargetMissing(f"Submit control unavailable: {error}")
        return result

    def read_content(self) -> str:
        driver = self.ensure_driver()
        try:
            return driver.find_element(By.TAG_NAME, "body").text
        except WebDriverException:
            return driver.page_source

    def page_source(self) -> str:
        return self.ensure_driver().page_source

    def capture_artifact(self, kind: str) -> Optional[str]:
        driver = self.driver
        if driver is None:
            return None

        name = f"screenshot-{kind}"
        try:
            png = driver.get_screenshot_as_png()
        except WebDriverException as exc:
            logging.debug("Failed to capture screenshot artifact: %s", exc)
            return None
        if self.artifact_store.save(name, png, "image/png") is None:
            return None
        return name

    # ------------------------------------------------------------------
    # Element helpers
    # ------------------------------------------------------------------
    def _wait_for_page_ready(self, driver: webdriver.Chrome, timeout: int = 30) -> None:
        WebDriverWait(driver, timeout).until(
            lambda drv: drv.execute_script("return document.readyState") in ("interactive", "complete")
        )

    def _find_element(self, selectors: Sequence[Selector], *, wait_time: int = 10):
        driver = self.ensure_driver()
        for by, value in selectors:
            try:
                return WebDriverWait(driver, wait_time).until(EC.visibility_of_element_located((by, value)))
            except TimeoutException:
                continue
        return None

    def _nth_text_input(self, position: int):
        driver = self.ensure_driver()
        inputs = [element for element in driver.find_elements(By.CSS_SELECTOR, self.TEXT_INPUT_CSS) if element.is_displayed()]
        if len(inputs) <= position:
            logging.warning("Expected at least %s inputs, found %s", position + 1, len(inputs))
            return None
        return inputs[position]

    def _scroll_into_view(self, element) -> None:
        try:
            self.ensure_driver().execute_script(
                "arguments[0].scrollIntoView({block: 'center', inline: 'center'});",
                element,
            )
        except WebDriverException:
            logging.debug("Unable to scroll element into view; continuing anyway.")
