import pytest
from pydantic import ValidationError

from marrow.models import DiscoveryResponse, Element, PageStructure, Strategy, StrategyType


def _element(name="title", strategies=None, score=0.9):
    return {
        "name": name,
        "description": "Page title",
        "strategies": strategies if strategies is not None else [
            {"type": "selector", "value": "h1.title"},
            {"type": "xpath", "value": "//h1"},
        ],
        "confidence_score": score,
    }


def test_element_requires_two_strategies():
    with pytest.raises(ValidationError):
        Element.model_validate(_element(strategies=[{"type": "selector", "value": "h1"}]))


def test_element_requires_distinct_strategies():
    duplicate = [{"type": "selector", "value": "h1"}, {"type": "selector", "value": "h1"}]
    with pytest.raises(ValidationError):
        Element.model_validate(_element(strategies=duplicate))


def test_element_rejects_out_of_range_confidence():
    with pytest.raises(ValidationError):
        Element.model_validate(_element(score=1.5))


def test_strategy_type_must_be_known():
    with pytest.raises(ValidationError):
        Strategy(type="css", value="h1")


def test_page_names_must_be_unique():
    with pytest.raises(ValidationError):
        DiscoveryResponse.model_validate({
            "domain": "example.com",
            "page_type": "article",
            "elements": [_element("title"), _element("title")],
        })


def test_ordered_strategies_put_css_first():
    element = Element.model_validate(_element(strategies=[
        {"type": "text_content", "value": "Sign in"},
        {"type": "aria", "value": "Sign in"},
        {"type": "data_attr", "value": 'data-testid="login"'},
        {"type": "selector", "value": "#login"},
    ]))
    types = [s.type for s in element.ordered_strategies()]
    assert types == [StrategyType.SELECTOR, StrategyType.DATA_ATTR, StrategyType.ARIA, StrategyType.TEXT_CONTENT]


def test_locators_render_each_strategy_type():
    element = Element.model_validate(_element(strategies=[
        {"type": "selector", "value": "#login"},
        {"type": "data_attr", "value": 'data-testid="login"'},
        {"type": "aria", "value": "Sign in"},
        {"type": "xpath", "value": "//button[1]"},
        {"type": "text_content", "value": "Sign in"},
    ]))
    assert element.locators() == [
        "#login",
        '[data-testid="login"]',
        '[aria-label="Sign in"]',
        "xpath=//button[1]",
        "text=Sign in",
    ]


def test_aria_with_attribute_expression():
    assert Strategy(type="aria", value='role="button"').to_locator() == '[role="button"]'
    assert Strategy(type="aria", value='[aria-label="Next"]').to_locator() == '[aria-label="Next"]'


def test_page_structure_element_lookup():
    page = PageStructure(
        domain="example.com",
        url="example.com",
        page_type="article",
        elements=[Element.model_validate(_element("title"))],
    )
    assert page.element("title").name == "title"
    assert page.element("missing") is None
    assert page.usage_count == 0
