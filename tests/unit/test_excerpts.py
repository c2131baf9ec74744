import json

from study_rag.retrieval.excerpts import (
    create_excerpts,
    extract_relevant_excerpt,
    plain_text,
)


def test_plain_text_splits_on_blank_lines() -> None:
    content = (
        "Faith is described as trust in things unseen.\n\n"
        "Short.\n\n"
        "Grace is presented as an unearned gift throughout the letters."
    )
    excerpts = create_excerpts(content, max_chars=500)

    assert [excerpt.text for excerpt in excerpts] == [
        "Faith is described as trust in things unseen.",
        "Grace is presented as an unearned gift throughout the letters.",
    ]
    assert all(excerpt.chapter is None for excerpt in excerpts)


def test_long_paragraph_is_packed_by_sentence() -> None:
    sentence = "This sentence talks about the nature of physical energy. "
    excerpts = create_excerpts(sentence * 20, max_chars=120)

    assert len(excerpts) > 1
    assert all(len(excerpt.text) <= 120 for excerpt in excerpts)
    assert {excerpt.paragraph for excerpt in excerpts} == {0}


def test_structured_content_keeps_chapter_numbers() -> None:
    content = json.dumps(
        {
            "chapters": [
                {"number": 1, "paragraphs": [{"text": "The first chapter introduces the empire."}]},
                {"number": 2, "paragraphs": ["The second chapter follows its slow decline."]},
            ]
        }
    )
    excerpts = create_excerpts(content)

    assert [(excerpt.chapter, excerpt.text) for excerpt in excerpts] == [
        (1, "The first chapter introduces the empire."),
        (2, "The second chapter follows its slow decline."),
    ]
    assert "slow decline" in plain_text(content)


def test_relevant_excerpt_finds_window_with_query_terms() -> None:
    content = "filler text " * 60 + "the doctrine of grace is central here " + "more filler " * 60
    excerpt = extract_relevant_excerpt(content, "grace doctrine", max_chars=100)

    assert "grace" in excerpt
    assert excerpt.startswith("...")
    assert excerpt.endswith("...")
