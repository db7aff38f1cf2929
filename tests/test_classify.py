from taskgate.classify import (
    count_markers,
    extract_task_id,
    find_artifact_path,
    is_exempt_role,
    is_implementation_role,
    is_review_role,
    is_spec_check_role,
    is_test_path,
    normalize_role,
    phase_for_role,
    phase_from_prompt,
)


def test_roles_map_to_phases() -> None:
    assert normalize_role("workflow:Specify-Agent") == "specify-agent"
    assert phase_for_role("workflow:specify-agent") == "specify"
    assert phase_for_role("architecture-tech-lead") == "architecture"
    assert phase_for_role("task-planner") == "decompose"
    assert phase_for_role("code-implementer-agent") == "execute"
    assert phase_for_role("general-purpose") is None
    assert phase_for_role(None) is None


def test_prompt_fallback_phases() -> None:
    assert phase_from_prompt("Please brainstorm options for login") == "brainstorm"
    assert phase_from_prompt("Write the specification for login") == "specify"
    assert phase_from_prompt("Implement T4 from the plan") == "execute"
    assert phase_from_prompt("Summarise the README") is None


def test_role_categories() -> None:
    assert is_exempt_role("explore")
    assert not is_exempt_role("specify-agent")
    assert is_review_role("reviewer-agent")
    assert is_review_role("security-review-bot")
    assert is_spec_check_role("plugin:spec-check-agent")
    assert is_implementation_role("code-implementer-agent")
    assert is_implementation_role("general-purpose")
    assert not is_implementation_role("reviewer-agent")
    assert not is_implementation_role("")


def test_task_id_extraction_priority() -> None:
    assert extract_task_id("**Task ID:** t12\nrelated to T3") == "T12"
    assert extract_task_id("Context: T1 done.\nTask ID: T7") == "T7"
    assert extract_task_id("Blocked by T2.\nTask: T5") == "T5"
    assert extract_task_id("See T9 later.\nT4: add login form") == "T4"
    assert extract_task_id("after t2 I will implement T6 now") == "T6"
    assert extract_task_id("the t3 result and T8 Login form") == "T8"
    assert extract_task_id("mentions T11 in passing") == "T11"
    assert extract_task_id("no identifier here") is None
    assert extract_task_id(None) is None


def test_markers_and_artifacts() -> None:
    text = "[NEEDS CLARIFICATION] one\n[NEEDS CLARIFICATION] two"

    assert count_markers(text, "[NEEDS CLARIFICATION]") == 2
    assert count_markers("", "[NEEDS CLARIFICATION]") == 0
    assert (
        find_artifact_path("Drafted notes.\nSaved to docs/draft.md then wrote `docs/spec.md`.")
        == "docs/spec.md"
    )
    assert find_artifact_path("nothing written") is None


def test_test_paths() -> None:
    assert is_test_path("src/test/java/com/acme/LoginTest.java")
    assert is_test_path("web/src/__tests__/login.tsx")
    assert is_test_path("web/login.spec.ts")
    assert is_test_path("pkg/test_login.py")
    assert is_test_path("tests/helpers.py")
    assert not is_test_path("src/main/java/com/acme/Login.java")
    assert not is_test_path("src/latest.py")
