import subprocess
from pathlib import Path

from taskgate.evidence import (
    collect_diff,
    current_head,
    evaluate_new_tests,
    evaluate_review,
    evaluate_spec_check,
    evaluate_test_output,
    evaluate_test_runs,
    scan_added_tests,
)


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def test_maven_requires_build_success_and_zero_failures() -> None:
    passed = evaluate_test_output(
        "[INFO] Tests run: 12, Failures: 0, Errors: 0, Skipped: 1\n[INFO] BUILD SUCCESS"
    )
    failed = evaluate_test_output(
        "[ERROR] Tests run: 12, Failures: 2, Errors: 0, Skipped: 0\n[INFO] BUILD FAILURE"
    )
    empty = evaluate_test_output("Tests run: 0, Failures: 0, Errors: 0\nBUILD SUCCESS")

    assert passed.passed is True
    assert passed.evidence.startswith("maven: ")
    assert "Tests run: 12" in passed.evidence
    assert failed.passed is False
    assert empty.passed is False


def test_vitest_jest_mocha_and_pytest_grammars() -> None:
    vitest = evaluate_test_output(" Test Files  3 passed (3)\n      Tests  14 passed (14)")
    vitest_failed = evaluate_test_output("      Tests  1 failed | 13 passed (14)")
    jest = evaluate_test_output("Tests:       1 failed, 9 passed, 10 total")
    mocha = evaluate_test_output("  8 passing (120ms)\n")
    mocha_failed = evaluate_test_output("  8 passing (120ms)\n  1 failing\n")
    pytest_ok = evaluate_test_output("======== 23 passed in 0.41s ========")
    pytest_bad = evaluate_test_output("==== 1 failed, 22 passed in 0.52s ====")

    assert vitest.passed is True
    assert vitest.runner == "vitest"
    assert vitest_failed.passed is False
    assert jest.passed is False
    assert mocha.passed is True
    assert mocha.evidence.startswith("node: ")
    assert mocha_failed.passed is False
    assert pytest_ok.passed is True
    assert pytest_bad.passed is False


def test_go_and_cargo_grammars() -> None:
    go_ok = evaluate_test_output(
        "ok  \texample.com/pkg\t0.012s\n?   \texample.com/cmd\t[no test files]\n"
    )
    go_bad = evaluate_test_output(
        "--- FAIL: TestLogin (0.00s)\n    login_test.go:12: expected 200\n"
        "FAIL\nFAIL\texample.com/pkg\t0.015s\n"
    )
    cargo_ok = evaluate_test_output("test result: ok. 5 passed; 0 failed; 0 ignored; 0 measured")
    cargo_bad = evaluate_test_output("test result: FAILED. 4 passed; 1 failed; 0 ignored")

    assert go_ok.passed is True
    assert go_ok.runner == "go"
    assert go_ok.evidence == "go: ok  \texample.com/pkg\t0.012s"
    assert go_bad.passed is False
    assert go_bad.evidence.startswith("go: --- FAIL: TestLogin")
    assert cargo_ok.passed is True
    assert cargo_ok.runner == "cargo"
    assert cargo_bad.passed is False
    assert evaluate_test_runs(["ok  \texample.com/pkg\t0.012s\n"]).passed is True


def test_markdown_emphasis_does_not_hide_the_summary() -> None:
    result = evaluate_test_output("**Tests run: 4, Failures: 0, Errors: 0**\n**BUILD SUCCESS**")

    assert result.passed is True


def test_latest_recognised_run_wins() -> None:
    outputs = [
        "Tests run: 4, Failures: 1, Errors: 0\nBUILD FAILURE",
        "Tests run: 4, Failures: 0, Errors: 0\nBUILD SUCCESS",
        "compiling...",
    ]

    assert evaluate_test_runs(outputs).passed is True
    assert evaluate_test_runs([]).evidence == "no test-runner invocation found in transcript"
    assert evaluate_test_runs(["nothing useful"]).passed is False


def test_new_tests_require_assertions() -> None:
    diff = "\n".join(
        [
            "diff --git a/src/test/java/LoginTest.java b/src/test/java/LoginTest.java",
            "--- a/src/test/java/LoginTest.java",
            "+++ b/src/test/java/LoginTest.java",
            "+    @Test",
            "+    void rejectsBadPassword() {",
            "+        assertThrows(AuthException.class, () -> login(\"x\"));",
            "+    }",
            "+    @Test",
            "+    void placeholder() {",
            "+    }",
            "diff --git a/web/login.test.ts b/web/login.test.ts",
            "--- /dev/null",
            "+++ b/web/login.test.ts",
            "+it('renders', () => {",
            "+  expect(render()).toBeTruthy();",
            "+});",
            "diff --git a/src/main/Login.java b/src/main/Login.java",
            "--- a/src/main/Login.java",
            "+++ b/src/main/Login.java",
            "+    // @Test is mentioned in production code",
        ]
    )

    declarations = scan_added_tests(diff)
    result = evaluate_new_tests(diff)

    assert [item.assertions for item in declarations] == [1, 0, 1]
    assert result.written is True
    assert result.count == 2
    assert result.evidence.startswith("2 new test methods (java: 1; ts/js: 1)")
    assert result.zero_assertion == ["src/test/java/LoginTest.java: @Test"]


def test_new_tests_with_only_empty_bodies_fail() -> None:
    diff = "\n".join(
        [
            "+++ b/tests/test_login.py",
            "+def test_login():",
            "+    pass",
        ]
    )

    result = evaluate_new_tests(diff)

    assert result.written is False
    assert result.evidence.startswith("1 new test declarations with 0 assertions")
    assert evaluate_new_tests("").evidence == "no new test methods found in diff"
    assert evaluate_new_tests(diff, required=False).evidence == "new_tests_required=false (skipped)"


def test_file_scope_limits_the_scan() -> None:
    diff = "\n".join(
        [
            "+++ b/tests/test_a.py",
            "+def test_a():",
            "+    assert True",
            "+++ b/tests/test_b.py",
            "+def test_b():",
            "+    assert True",
        ]
    )

    declarations = scan_added_tests(diff, ["/repo/tests/test_b.py"])

    assert [item.file for item in declarations] == ["tests/test_b.py"]


def test_structured_review_block() -> None:
    passed = evaluate_review(
        "REVIEW_TASK: T3\nREVIEW_VERDICT: PASSED\nREVIEW_CRITICAL_COUNT: 0\n"
        "ADVISORY: rename helper",
        "T3",
    )
    blocked = evaluate_review(
        "**REVIEW_VERDICT:** BLOCKED\nCRITICAL: SQL built by string concatenation", "T3"
    )

    assert passed.status == "passed"
    assert passed.advisory_findings == ["rename helper"]
    assert blocked.status == "blocked"
    assert blocked.critical_findings == ["SQL built by string concatenation"]


def test_informal_sign_off_is_not_a_pass() -> None:
    result = evaluate_review("Looks great, LGTM!", "T1")

    assert result.status == "evidence_capture_failed"
    assert result.task_id == "T1"


def test_review_for_another_task_is_malformed() -> None:
    result = evaluate_review("REVIEW_TASK: T9\nREVIEW_VERDICT: PASSED", "T2")

    assert result.status == "evidence_capture_failed"
    assert result.task_id == "T2"
    assert "T9" in result.detail


def test_unstructured_critical_lines_still_block() -> None:
    result = evaluate_review("- CRITICAL: token logged in plain text\nCRITICAL: none", "T5")

    assert result.status == "blocked"
    assert result.critical_findings == ["token logged in plain text"]


def test_critical_count_without_detail_and_bare_blocked_verdict() -> None:
    counted = evaluate_review("REVIEW_CRITICAL_COUNT: 2", "T1")
    bare = evaluate_review("REVIEW_VERDICT: BLOCKED", "T1")
    odd = evaluate_review("REVIEW_VERDICT: MAYBE", "T1")

    assert counted.status == "blocked"
    assert len(counted.critical_findings) == 2
    assert bare.status == "blocked"
    assert len(bare.critical_findings) == 1
    assert odd.status == "evidence_capture_failed"


def test_spec_check_verdicts() -> None:
    blocked = evaluate_spec_check(
        "[CRITICAL] login endpoint missing\n[HIGH] no rate limit\n[LOW] naming", 2, "t0"
    )
    passed = evaluate_spec_check("SPEC_CHECK_VERDICT: PASSED", 1)
    medium_only = evaluate_spec_check("- [MEDIUM] doc drift", 1)
    unknown = evaluate_spec_check("all good", 1)

    assert blocked.verdict == "BLOCKED"
    assert blocked.wave == 2
    assert blocked.critical_count == 1
    assert blocked.high_findings == ["no rate limit"]
    assert passed.verdict == "PASSED"
    assert medium_only.verdict == "PASSED"
    assert medium_only.medium_findings == ["doc drift"]
    assert unknown.verdict == "EVIDENCE_CAPTURE_FAILED"


def test_collect_diff_includes_untracked_test_files(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    start = current_head(repo)
    assert start is not None

    (repo / "seed.txt").write_text("seed\nchanged\n", encoding="utf-8")
    (repo / "tests").mkdir()
    (repo / "tests" / "test_login.py").write_text(
        "def test_login():\n    assert 1 + 1 == 2\n", encoding="utf-8"
    )
    (repo / "notes.md").write_text("scratch\n", encoding="utf-8")

    diff = collect_diff(repo, start)
    result = evaluate_new_tests(diff)

    assert "+changed" in diff
    assert "+++ b/tests/test_login.py" in diff
    assert "notes.md" not in diff
    assert result.written is True
    assert result.count == 1


def test_git_helpers_outside_a_repository(tmp_path: Path) -> None:
    assert current_head(tmp_path) is None
    assert collect_diff(tmp_path, None) == ""
