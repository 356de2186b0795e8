"""Playwright-based search scraper for the Oda and Meny online stores."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from loguru import logger
from playwright.sync_api import Error as PlaywrightError, Page, sync_playwright, TimeoutError as PlaywrightTimeout
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from matpris.config_loader import get_scraping_config
from matpris.extractors import ExtractionFailure, ProductTile, ResponseCollector, extract_products
from matpris.products import RawProduct


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

ANTI_BOT_MARKERS = [
    "just a moment",
    "verify you are human",
    "checking your browser",
    "attention required",
    "captcha",
]


@dataclass
class StoreProfile:
    """Where and how to search one store."""

    name: str
    base_url: str
    search_url: str
    tile_selector: str
    api_url_fragments: List[str] = field(default_factory=list)
    settle_delay_ms: int = 2000
    max_tiles: int = 10


DEFAULT_STORES: Dict[str, Dict[str, Any]] = {
    "oda": {
        "base_url": "https://oda.com",
        "search_url": "https://oda.com/no/search/products/?q={query}",
        "tile_selector": '[data-testid="product-tile"]',
        "api_url_fragments": ["oda.com", "/api/", "product"],
        "settle_delay_ms": 3000,
    },
    "meny": {
        "base_url": "https://meny.no",
        "search_url": "https://meny.no/sok/?query={query}&expanded=products",
        "tile_selector": 'a[href*="/varer/"]',
        "api_url_fragments": [],
        "settle_delay_ms": 2000,
    },
}


def get_store_profiles(scraping_config: Dict[str, Any]) -> Dict[str, StoreProfile]:
    """Build store profiles in configured order, filling gaps from defaults."""
    configured = scraping_config.get("stores") or {}
    if not isinstance(configured, dict) or not configured:
        configured = {name: {} for name in DEFAULT_STORES}

    profiles: Dict[str, StoreProfile] = {}
    for name, overrides in configured.items():
        merged = dict(DEFAULT_STORES.get(name, {}))
        merged.update(overrides or {})
        missing = [k for k in ("base_url", "search_url", "tile_selector") if not merged.get(k)]
        if missing:
            raise ValueError(f"Store '{name}' is missing settings: {', '.join(missing)}")
        profiles[name] = StoreProfile(
            name=name,
            base_url=str(merged["base_url"]),
            search_url=str(merged["search_url"]),
            tile_selector=str(merged["tile_selector"]),
            api_url_fragments=[str(f) for f in merged.get("api_url_fragments") or []],
            settle_delay_ms=int(merged.get("settle_delay_ms", 2000)),
            max_tiles=int(merged.get("max_tiles", 10)),
        )
    return profiles


class StoreScraper:
    """Shared browser session used to search every configured store."""

    def __init__(self, config: Dict[str, Any], headless: Optional[bool] = None):
        """Initialize the scraper.

        Args:
            config: Configuration dictionary
            headless: Override headless mode from config
        """
        self.config = config
        self.scraping_config = get_scraping_config(config)
        self.stores = get_store_profiles(self.scraping_config)

        self.navigation_timeout = int(self.scraping_config.get("navigation_timeout", 30000))
        browser_config = self.scraping_config.get("browser", {})
        self.headless = headless if headless is not None else browser_config.get("headless", True)

        self.playwright = None
        self.browser = None
        self.context = None

        logger.info(f"Scraper initialized (headless={self.headless}, stores={', '.join(self.stores)})")

    @property
    def store_names(self) -> List[str]:
        return list(self.stores)

    def start(self):
        """Start the browser and create a shared context."""
        logger.info("Starting browser...")
        self.playwright = sync_playwright().start()

        browser_config = self.scraping_config.get("browser", {})
        viewport = browser_config.get("viewport", {"width": 1366, "height": 900})

        try:
            self.browser = self.playwright.chromium.launch(
                headless=self.headless,
                args=["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage", "--disable-gpu"],
            )
            self.context = self.browser.new_context(
                viewport=viewport,
                user_agent=browser_config.get("user_agent", DEFAULT_USER_AGENT),
            )
        except Exception:
            logger.error("Browser launch failed, stopping Playwright")
            self.stop()
            raise
        logger.info("Browser started successfully")

    def stop(self):
        """Stop the browser and cleanup."""
        logger.info("Stopping browser...")
        for resource in (self.context, self.browser):
            if resource is None:
                continue
            try:
                resource.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing browser resource: {e}")
        if self.playwright:
            try:
                self.playwright.stop()
            except Exception as e:
                logger.debug(f"Ignoring error while stopping Playwright: {e}")
        self.context = None
        self.browser = None
        self.playwright = None
        logger.info("Browser stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(PlaywrightTimeout),
        reraise=True,
    )
    def _goto(self, page: Page, url: str) -> None:
        page.goto(url, wait_until="networkidle", timeout=self.navigation_timeout)

    def _open_search_page(self, page: Page, profile: StoreProfile, query: str) -> None:
        search_url = profile.search_url.format(query=quote(query))
        logger.info(f"[{profile.name}] Navigating to: {search_url}")
        try:
            self._goto(page, search_url)
        except PlaywrightError as e:
            raise ExtractionFailure(f"navigation to {search_url} failed: {e}") from e

        if profile.settle_delay_ms > 0:
            page.wait_for_timeout(profile.settle_delay_ms)

        try:
            logger.debug(f"[{profile.name}] Page title: {page.title()}")
        except PlaywrightError:
            pass

    def _detect_anti_bot_marker(self, page: Page) -> Optional[str]:
        """Return marker text when the page appears to be a bot challenge."""
        try:
            combined = f"{page.title()} {page.locator('body').first.inner_text(timeout=1200)}".lower()
        except PlaywrightError:
            return None
        for marker in ANTI_BOT_MARKERS:
            if marker in combined:
                return marker
        return None

    @staticmethod
    def _optional_attr(element, selector: str, attr_name: str) -> Optional[str]:
        try:
            locator = element.locator(selector).first
            if locator.count() == 0:
                return None
            return locator.get_attribute(attr_name)
        except PlaywrightError:
            return None

    @staticmethod
    def _optional_text(element, selector: str) -> str:
        try:
            locator = element.locator(selector).first
            if locator.count() == 0:
                return ""
            return (locator.text_content() or "").strip()
        except PlaywrightError:
            return ""

    def _read_oda_tiles(self, page: Page, profile: StoreProfile) -> List[ProductTile]:
        tiles = []
        for element in page.locator(profile.tile_selector).all()[: profile.max_tiles]:
            try:
                tiles.append(
                    ProductTile(
                        text=element.text_content() or "",
                        label=element.get_attribute("aria-label") or "",
                        href=self._optional_attr(element, 'a[href*="/products/"]', "href") or "",
                        image_url=self._optional_attr(element, "img", "src"),
                    )
                )
            except PlaywrightError as e:
                logger.debug(f"[oda] Skipping unreadable tile: {e}")
        return tiles

    def _read_meny_tiles(self, page: Page, profile: StoreProfile) -> List[ProductTile]:
        tiles = []
        seen_hrefs = set()
        for link in page.locator(profile.tile_selector).all():
            if len(tiles) >= profile.max_tiles * 2:
                break
            try:
                href = link.get_attribute("href") or ""
                if not href or href in seen_hrefs:
                    continue
                seen_hrefs.add(href)

                container = link.locator("xpath=ancestor::*[self::article or self::li or self::div][1]")
                if container.count() == 0:
                    container = link.locator("xpath=..")
                container = container.first
                tiles.append(
                    ProductTile(
                        text=container.text_content() or "",
                        title=self._optional_text(container, "h3"),
                        href=href,
                        image_url=self._optional_attr(container, "img", "src"),
                    )
                )
            except PlaywrightError as e:
                logger.debug(f"[meny] Skipping unreadable tile: {e}")
        return tiles

    def _read_tiles(self, page: Page, profile: StoreProfile) -> List[ProductTile]:
        readers = {
            "oda": self._read_oda_tiles,
            "meny": self._read_meny_tiles,
        }
        reader = readers.get(profile.name)
        if reader is None:
            raise ExtractionFailure(f"No tile reader for store '{profile.name}'")
        logger.info(f"[{profile.name}] Falling back to page tiles")
        return reader(page, profile)

    def search(self, store: str, query: str, limit: int) -> List[RawProduct]:
        """Search `store` for `query` and return at most `limit` products.

        Any failure is logged and yields an empty list so one broken store
        never aborts the batch.
        """
        if self.context is None:
            raise RuntimeError("Browser not started")
        profile = self.stores[store]

        page = self.context.new_page()
        page.set_default_timeout(self.navigation_timeout)
        collector = ResponseCollector(profile.api_url_fragments)
        try:
            collector.attach(page)
            self._open_search_page(page, profile, query)
            if len(collector):
                logger.info(f"[{store}] Captured {len(collector)} API responses")

            products = extract_products(
                store,
                collector.payloads(),
                lambda: self._read_tiles(page, profile),
                limit,
                base_url=profile.base_url,
            )
            if not products:
                marker = self._detect_anti_bot_marker(page)
                if marker:
                    logger.warning(f"[{store}] Search page looks blocked by anti-bot challenge ({marker})")
            return products
        except ExtractionFailure as e:
            logger.warning(f"[{store}] Extraction failed for '{query}': {e}")
            return []
        except Exception as e:
            logger.error(f"[{store}] Error scraping '{query}': {e}")
            return []
        finally:
            try:
                page.close()
            except PlaywrightError as e:
                logger.debug(f"Ignoring error while closing page: {e}")
