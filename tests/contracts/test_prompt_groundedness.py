from study_rag.agent.grounding import GROUNDING_PHRASES
from study_rag.agent.prompts import render_answer_prompt
from study_rag.obs.tracing import GroundednessEvaluator


def test_answer_prompt_contains_grounding_rules() -> None:
    prompt = render_answer_prompt("What is faith?", "[Letters] Faith is trust.", "Letters on Faith")

    assert "Answer only from the context" in prompt
    assert "Do not cite outside research" in prompt
    assert "The reader is currently reading: Letters on Faith" in prompt
    # The grounding phrase the prompt asks for must be one the confidence heuristic rewards.
    assert any(phrase in prompt.lower() for phrase in GROUNDING_PHRASES)


def test_question_precedes_context() -> None:
    prompt = render_answer_prompt("What is faith?", "x" * 5000)
    assert prompt.index("Question: What is faith?") < prompt.index("Context:")


def test_groundedness_evaluator_high_for_supported_answer() -> None:
    evaluator = GroundednessEvaluator()
    answer = "Based on the context, faith is trust in what is hoped for."
    excerpts = ["Faith is trust in what is hoped for. Faith and hope belong together in these letters."]

    assert evaluator.score(answer, excerpts) >= 0.95
    assert evaluator.score("Quantum fields permeate spacetime.", excerpts) == 0.0
