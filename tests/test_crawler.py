"""Tests for the bounded BFS crawler."""

import pytest

from vulnscan.crawler import Crawler, normalize_url, registrable_suffix

from tests.fakes import FakeBrowser, FakeSite, chain_site

BASE = "http://site.test"


async def _collect(crawler):
    seen = []

    async def on_page(ctx):
        seen.append(ctx.url)

    count = await crawler.crawl(on_page)
    return count, seen


class TestUrlHelpers:
    """normalize_url / registrable_suffix."""

    def test_fragment_dropped(self):
        assert normalize_url("http://a.test/x?q=1#top") == "http://a.test/x?q=1"

    def test_registrable_suffix(self):
        assert registrable_suffix("a.b.example.com") == "example.com"
        assert registrable_suffix("example.com") == "example.com"
        assert registrable_suffix("") == ""


class TestCrawlBounds:
    """Depth and page budgets."""

    async def test_depth_bound(self):
        browser = FakeBrowser(chain_site(10))
        crawler = Crawler(browser, f"{BASE}/p0", max_depth=2, max_pages=50)
        count, seen = await _collect(crawler)
        assert count == 3
        assert seen == [f"{BASE}/p0", f"{BASE}/p1", f"{BASE}/p2"]

    async def test_page_budget(self):
        site = FakeSite()
        site.add(f"{BASE}/", links=[f"{BASE}/n{i}" for i in range(20)])
        for i in range(20):
            site.add(f"{BASE}/n{i}")
        crawler = Crawler(FakeBrowser(site), f"{BASE}/", max_depth=3, max_pages=5)
        count, seen = await _collect(crawler)
        assert count == 5
        assert len(crawler.visited) == 5

    async def test_depth_zero_only_seed(self):
        crawler = Crawler(FakeBrowser(chain_site(3)), f"{BASE}/p0", max_depth=0, max_pages=10)
        count, _ = await _collect(crawler)
        assert count == 1


class TestCrawlBehavior:
    """Cycles, scope, failures and page cleanup."""

    async def test_cycles_visited_once(self):
        site = FakeSite()
        site.add(f"{BASE}/a", links=[f"{BASE}/b", f"{BASE}/a#frag"])
        site.add(f"{BASE}/b", links=[f"{BASE}/a"])
        crawler = Crawler(FakeBrowser(site), f"{BASE}/a", max_depth=5, max_pages=10)
        count, seen = await _collect(crawler)
        assert count == 2
        assert site.navigations.count(f"{BASE}/a") == 1

    async def test_out_of_scope_links_skipped(self):
        site = FakeSite()
        site.add(f"{BASE}/", links=["http://other.test/", "mailto:x@site.test", f"{BASE}/in"])
        site.add(f"{BASE}/in")
        site.add("http://other.test/")
        crawler = Crawler(FakeBrowser(site), f"{BASE}/", max_depth=2, max_pages=10)
        _, seen = await _collect(crawler)
        assert "http://other.test/" not in seen
        assert f"{BASE}/in" in seen

    async def test_subdomains_opt_in(self):
        site = FakeSite()
        site.add(f"{BASE}/", links=["http://api.site.test/"])
        site.add("http://api.site.test/")

        off = Crawler(FakeBrowser(site), f"{BASE}/", max_depth=1, max_pages=10)
        _, seen_off = await _collect(off)
        on = Crawler(FakeBrowser(site), f"{BASE}/", max_depth=1, max_pages=10, subdomains=True)
        _, seen_on = await _collect(on)

        assert "http://api.site.test/" not in seen_off
        assert "http://api.site.test/" in seen_on

    async def test_navigation_failure_skipped(self):
        site = FakeSite()
        site.add(f"{BASE}/", links=[f"{BASE}/broken", f"{BASE}/ok"])
        site.add(f"{BASE}/broken", fail=True)
        site.add(f"{BASE}/ok")
        crawler = Crawler(FakeBrowser(site), f"{BASE}/", max_depth=1, max_pages=10)
        count, seen = await _collect(crawler)
        assert count == 2
        assert f"{BASE}/broken" in site.navigations
        assert f"{BASE}/broken" not in seen

    async def test_pages_always_closed(self):
        site = FakeSite()
        site.add(f"{BASE}/", links=[f"{BASE}/broken"])
        site.add(f"{BASE}/broken", fail=True)
        browser = FakeBrowser(site)
        await _collect(Crawler(browser, f"{BASE}/", max_depth=1, max_pages=10))
        assert browser.open_pages == 0
        assert all(s.closed for s in browser.sessions)

    async def test_callback_errors_propagate(self):
        crawler = Crawler(FakeBrowser(chain_site(2)), f"{BASE}/p0", max_depth=1, max_pages=5)

        async def on_page(ctx):
            raise RuntimeError("analysis exploded")

        with pytest.raises(RuntimeError):
            await crawler.crawl(on_page)

    async def test_should_stop(self):
        seen = []

        async def stop():
            return len(seen) >= 2

        async def on_page(ctx):
            seen.append(ctx.url)

        crawler = Crawler(FakeBrowser(chain_site(10)), f"{BASE}/p0", max_depth=9,
                          max_pages=10, should_stop=stop)
        assert await crawler.crawl(on_page) == 2

    async def test_page_context_contents(self):
        site = FakeSite()
        site.add(f"{BASE}/", html="<h1>hi</h1>", headers={"server": "nginx"})
        browser = FakeBrowser(site)
        pages = []

        async def on_page(ctx):
            pages.append(ctx)

        crawler = Crawler(browser, f"{BASE}/", blocked_resources=["**/*.png"])
        await crawler.crawl(on_page)
        assert pages[0].html == "<h1>hi</h1>"
        assert pages[0].headers == {"server": "nginx"}
        assert pages[0].screenshot == "ZmFrZQ=="
        assert browser.sessions[0].blocked == ["**/*.png"]
