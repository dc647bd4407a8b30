import asyncio

import pytest

from conftest import sample_elements, sample_page
from marrow.exceptions import InvalidUrl
from marrow.models import Element
from marrow.registry import Registry


def _variant(description: str):
    elements = sample_elements()
    elements[0] = elements[0].model_copy(update={"description": description})
    return elements


@pytest.mark.asyncio
async def test_save_then_get(registry):
    result = await registry.save_map(sample_page("https://www.news.ycombinator.com/"))
    assert result.status == "created"

    page = await registry.get_map("news.ycombinator.com")
    assert page.id == result.id
    assert page.url == "news.ycombinator.com"
    assert [el.name for el in page.elements] == ["story_list", "nav_new"]
    assert page.usage_count == 0


@pytest.mark.asyncio
async def test_second_save_reports_exists_and_keeps_first(registry):
    first = await registry.save_map(sample_page("example.com/jobs", _variant("first")))
    second = await registry.save_map(sample_page("https://example.com/jobs/", _variant("second")))

    assert second.status == "exists"
    assert second.id == first.id
    stored = await registry.get_map("example.com/jobs")
    assert stored.elements[0].description == "first"


@pytest.mark.asyncio
async def test_concurrent_saves_create_exactly_one(registry):
    pages = [sample_page("example.com/race", _variant(f"writer {i}")) for i in range(6)]

    results = await asyncio.gather(*(registry.save_map(p) for p in pages))

    statuses = [r.status for r in results]
    assert statuses.count("created") == 1
    assert statuses.count("exists") == 5
    assert len({r.id for r in results}) == 1

    winner = statuses.index("created")
    stored = await registry.get_map("example.com/race")
    assert stored.elements[0].description == f"writer {winner}"
    assert (await registry.get_counter("total_maps")).value == 1


@pytest.mark.asyncio
async def test_exact_match_only_by_default(registry):
    await registry.save_map(sample_page("example.com/jobs"))
    assert await registry.get_map("example.com/careers") is None


@pytest.mark.asyncio
async def test_domain_fallback_returns_most_used(temp_dir):
    registry = Registry(temp_dir / "fallback.db", domain_fallback=True)
    await registry.save_map(sample_page("example.com/a"))
    await registry.save_map(sample_page("example.com/b"))
    await registry.track_view("example.com/b")

    page = await registry.get_map("example.com/unknown")
    assert page.url == "example.com/b"
    assert await registry.get_map("other.org/a") is None


@pytest.mark.asyncio
async def test_get_element(registry):
    await registry.save_map(sample_page("example.com/jobs"))

    element = await registry.get_element("example.com/jobs", "nav_new")
    assert isinstance(element, Element)
    assert element.description == "Link to the newest stories"
    assert (await registry.get_element("example.com/other", "story_list")).name == "story_list"
    assert await registry.get_element("example.com/jobs", "missing") is None
    assert await registry.get_element("nothing.org", "nav_new") is None


@pytest.mark.asyncio
async def test_track_view_counts(registry):
    await registry.save_map(sample_page("example.com"))

    assert await registry.track_view("https://www.example.com/") is True
    assert await registry.track_view("example.com") is True
    assert await registry.track_view("unknown.org") is False

    assert (await registry.get_map("example.com")).usage_count == 2
    stats = await registry.get_stats()
    assert stats.total_requests == 2


@pytest.mark.asyncio
async def test_manifest_omits_selectors(registry):
    await registry.save_map(sample_page("example.com/b"))
    await registry.save_map(sample_page("example.com/a"))
    await registry.save_map(sample_page("other.org"))

    manifest = await registry.get_manifest("https://www.example.com")
    assert manifest.domain == "example.com"
    assert [p.url for p in manifest.pages] == ["example.com/a", "example.com/b"]
    dumped = manifest.model_dump()
    assert "strategies" not in str(dumped)
    assert dumped["pages"][0]["elements"][0] == {"name": "story_list", "description": "Table holding the stories"}


@pytest.mark.asyncio
async def test_stats_top_domains(registry):
    for path in ("a", "b", "c"):
        await registry.save_map(sample_page(f"big.com/{path}"))
    await registry.save_map(sample_page("small.com"))

    stats = await registry.get_stats()
    assert stats.total_maps == 4
    assert stats.total_requests == 0
    assert stats.top_domains == ["big.com", "small.com"]


@pytest.mark.asyncio
async def test_list_maps_by_domain(registry):
    await registry.save_map(sample_page("example.com/z"))
    await registry.save_map(sample_page("example.com/a"))
    listing = await registry.list_maps_by_domain("example.com")
    assert listing == {"domain": "example.com", "count": 2, "urls": ["example.com/a", "example.com/z"]}


@pytest.mark.asyncio
async def test_invalid_url_rejected(registry):
    with pytest.raises(InvalidUrl):
        await registry.get_map("")


def test_normalize_delegates():
    assert Registry.normalize("https://www.Example.com/x/").url == "example.com/x"
