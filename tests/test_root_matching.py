from bs4 import BeautifulSoup

from newsflow.services.extraction.root_matching import (
    Feature,
    build_selector,
    filter_by_features,
    find_original_root,
    sample_features,
)


def _root(html):
    soup = BeautifulSoup(html, "lxml")
    return soup.body.find(True)


def test_unique_id_and_classes_match_exactly():
    source = BeautifulSoup(
        """
        <body>
          <div class="sidebar"><p>links</p></div>
          <article id="main" class="post content"><p>Original body text.</p></article>
        </body>
        """,
        "lxml",
    )
    readable = _root('<div id="main" class="post content"><p>Rewritten</p></div>')

    matched = find_original_root(readable, source)

    assert matched.element.name == "article"
    assert matched.selector == "#main.post.content"
    assert matched.candidates == 1
    assert matched.confidence == 1.0
    assert not matched.relaxed


def test_identical_siblings_fall_back_to_first_with_low_confidence():
    source = BeautifulSoup(
        """
        <body>
          <div class="entry"><p>Same paragraph text in both.</p></div>
          <div class="entry"><p>Same paragraph text in both.</p></div>
        </body>
        """,
        "lxml",
    )
    readable = _root('<div class="entry"><p>Same paragraph text in both.</p></div>')

    matched = find_original_root(readable, source)

    assert matched.element is source.select(".entry")[0]
    assert matched.candidates == 2
    assert matched.confidence == 0.5


def test_descendant_features_narrow_candidates():
    source = BeautifulSoup(
        """
        <body>
          <div class="entry"><p>Teaser only.</p></div>
          <div class="entry"><span class="byline">Ada</span><p>Full article text.</p></div>
        </body>
        """,
        "lxml",
    )
    readable = _root('<div class="entry"><span class="byline">Ada</span><p>Full</p></div>')

    matched = find_original_root(readable, source)

    assert matched.element is source.select(".entry")[1]
    assert matched.confidence == 0.5


def test_relaxed_match_when_compound_selector_misses():
    source = BeautifulSoup(
        '<body><section class="story"><p>Body</p></section></body>', "lxml"
    )
    readable = _root('<div class="story highlighted"><p>Body</p></div>')

    matched = find_original_root(readable, source)

    assert matched.element.name == "section"
    assert matched.relaxed
    assert matched.confidence == 0.5


def test_no_match_returns_none():
    source = BeautifulSoup("<body><p>Nothing shared</p></body>", "lxml")
    readable = _root('<div class="missing"><p>x</p></div>')

    assert find_original_root(readable, source) is None


def test_selector_skips_invalid_classes_and_quoted_data_attributes():
    el = _root(
        '<div class="md:flex prose" data-kind="post" data-json=\'{"a":"b"}\'></div>'
    )

    assert build_selector(el) == '.prose[data-kind="post"]'


def test_text_features_used_when_structure_is_sparse():
    el = _root("<div><p>A sentence long enough to fingerprint.</p><p>short</p></div>")

    features = sample_features(el)

    assert features == [Feature("text", "A sentence long enough to fingerprint.")]


def test_filter_ignores_features_that_remove_every_candidate():
    soup = BeautifulSoup(
        "<body><div><p>alpha text</p></div><div><p>beta text</p></div></body>", "lxml"
    )
    candidates = soup.find_all("div")

    filtered = filter_by_features(candidates, [Feature("text", "gamma")])

    assert filtered == candidates


def test_confidence_counts_candidates_before_feature_filtering():
    source = BeautifulSoup(
        """
        <body>
          <div class="entry"><p>Teaser one.</p></div>
          <div class="entry"><p>Teaser two.</p></div>
          <div class="entry"><span class="byline">Ada</span><p>Full article text.</p></div>
        </body>
        """,
        "lxml",
    )
    readable = _root('<div class="entry"><span class="byline">Ada</span><p>Full</p></div>')

    matched = find_original_root(readable, source)

    assert matched.element is source.select(".entry")[2]
    assert matched.confidence == 1.0 / 3
