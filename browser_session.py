import os
from typing import Optional

from selenium.webdriver.chrome.options import Options

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def build_chrome_options(
    *,
    headless: bool,
    proxy_server: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Options:
    options = Options()
    if headless:
        options.add_argument("--headless=new")

    options.add_argument("--no-sandbox")
    options.add_argument("--disable-setuid-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-gpu")
    options.add_argument("--disable-extensions")
    options.add_argument("--disable-blink-features=AutomationControlled")
    options.add_argument("--window-size=1920,1080")
    options.add_argument("--lang=en-US")
    options.add_argument("--log-level=3")

    # Timers must keep firing on schedule while the tab sits in the background.
    options.add_argument("--disable-background-timer-throttling")
    options.add_argument("--disable-renderer-backgrounding")
    options.add_argument("--disable-backgrounding-occluded-windows")

    if proxy_server:
        options.add_argument(f"--proxy-server={proxy_server}")

    minimal_browser = os.getenv("MINIMAL_BROWSER", "false").lower() == "true"
    prefs = {
        "intl.accept_languages": "en-US,en",
        "profile.default_content_setting_values": {
            "images": 2 if minimal_browser else 0,
            "plugins": 2,
            "popups": 2,
            "geolocation": 2,
            "notifications": 2,
            "media_stream": 2,
        },
    }
    options.add_experimental_option("prefs", prefs)

    options.add_argument(f"--user-agent={user_agent or DEFAULT_USER_AGENT}")
    options.add_experimental_option("excludeSwitches", ["enable-automation"])
    options.add_experimental_option("useAutomationExtension", False)
    return options
