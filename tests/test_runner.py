"""End-to-end scheduler tests: real shell steps in a tmp workspace."""

import textwrap
import threading
import time

import pytest

from conftest import workflow
from gantry.actions.base import Action, ActionResult
from gantry.actions.registry import builtin_actions
from gantry.definition import load_definition
from gantry.errors import CycleError, DefinitionError
from gantry.model import Status, Trigger
from gantry.runner import static_approver
from gantry.secrets import SecretStore


def statuses(run):
    return {name: inst.status for name, inst in run.instances.items()}


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not reached in time")


class TestOrdering:
    def test_needs_run_first(self, make_scheduler, workspace):
        wf = workflow(
            """
            jobs:
              c: {needs: [a, b], steps: [{run: echo c >> order.txt}]}
              b: {needs: a, steps: [{run: echo b >> order.txt}]}
              a: {steps: [{run: echo a >> order.txt}]}
            """
        )
        run = make_scheduler().run(wf)
        assert run.status is Status.SUCCEEDED
        assert (workspace / "order.txt").read_text().split() == ["a", "b", "c"]

    def test_steps_are_sequential(self, make_scheduler, workspace):
        wf = workflow(
            """
            jobs:
              a:
                steps:
                  - run: sleep 0.1 && echo 1 >> seq.txt
                  - run: echo 2 >> seq.txt
            """
        )
        make_scheduler().run(wf)
        assert (workspace / "seq.txt").read_text().split() == ["1", "2"]


class TestFailurePropagation:
    WF = """
        jobs:
          x: {steps: [{run: echo boom && exit 3}]}
          y: {needs: x, steps: [{run: echo y}]}
          w: {needs: y, steps: [{run: echo w}]}
          z: {steps: [{run: echo z}]}
        """

    def test_dependents_skipped_independent_succeeds(self, make_scheduler):
        run = make_scheduler().run(workflow(self.WF))
        assert statuses(run) == {
            "x": Status.FAILED,
            "y": Status.SKIPPED,
            "w": Status.SKIPPED,
            "z": Status.SUCCEEDED,
        }
        assert run.status is Status.FAILED
        assert run.reason.startswith("x:")
        assert "exit=3" in run.instances["x"].reason
        assert run.instances["y"].reason == "dependency 'x' failed"
        assert run.instances["w"].reason == "dependency 'y' failed"
        assert "boom" in run.instances["x"].log

    def test_failure_condition_runs(self, make_scheduler):
        wf = workflow(
            """
            jobs:
              x: {steps: [{run: exit 1}]}
              notify: {needs: x, if: failure(), steps: [{run: echo notify}]}
              cleanup: {needs: x, if: always(), steps: [{run: echo cleanup}]}
              happy: {needs: x, if: success(), steps: [{run: echo happy}]}
            """
        )
        run = make_scheduler().run(wf)
        assert run.instances["notify"].status is Status.SUCCEEDED
        assert run.instances["cleanup"].status is Status.SUCCEEDED
        assert run.instances["happy"].status is Status.SKIPPED
        assert run.status is Status.FAILED

    def test_continue_on_error(self, make_scheduler):
        wf = workflow(
            """
            jobs:
              flaky: {continue-on-error: true, steps: [{run: exit 1}]}
              next: {needs: flaky, steps: [{run: echo ok}]}
            """
        )
        run = make_scheduler().run(wf)
        assert run.instances["flaky"].status is Status.FAILED
        assert run.instances["next"].status is Status.SUCCEEDED
        assert run.status is Status.SUCCEEDED

    def test_always_step_after_failure(self, make_scheduler, workspace):
        wf = workflow(
            """
            jobs:
              a:
                steps:
                  - run: exit 1
                  - run: touch skipped.txt
                  - if: always()
                    run: touch cleanup.txt
            """
        )
        run = make_scheduler().run(wf)
        assert run.instances["a"].status is Status.FAILED
        assert not (workspace / "skipped.txt").exists()
        assert (workspace / "cleanup.txt").exists()

    def test_missing_command_fails(self, make_scheduler):
        wf = workflow("jobs: {a: {steps: [{run: definitely-not-a-tool-xyz}]}}")
        run = make_scheduler().run(wf)
        assert run.instances["a"].status is Status.FAILED
        assert "exit=127" in run.instances["a"].reason


class TestConditions:
    def test_false_condition_skips(self, make_scheduler):
        wf = workflow(
            """
            jobs:
              a: {if: "event == 'release'", steps: [{run: echo a}]}
              b: {needs: a, steps: [{run: echo b}]}
            """
        )
        run = make_scheduler().run(wf, Trigger(event="push"))
        assert run.instances["a"].status is Status.SKIPPED
        assert run.instances["a"].reason == "condition evaluated to false"
        # a skipped need counts as satisfied
        assert run.instances["b"].status is Status.SUCCEEDED
        assert run.status is Status.SUCCEEDED

    def test_needs_success_only(self, make_scheduler, settings):
        wf = workflow(
            """
            jobs:
              a: {if: "false", steps: [{run: echo a}]}
              b: {needs: a, steps: [{run: echo b}]}
            """
        )
        run = make_scheduler(settings=settings.override(needs_success_only=True)).run(wf)
        assert run.instances["b"].status is Status.SKIPPED
        assert run.instances["b"].reason == "dependency 'a' was skipped"

    def test_trigger_context(self, make_scheduler):
        wf = workflow(
            """
            jobs:
              release: {if: "startsWith(ref, 'refs/tags/v')", steps: [{run: echo release}]}
              main: {if: "branch == 'main'", steps: [{run: echo main}]}
            """
        )
        run = make_scheduler().run(wf, Trigger(ref="refs/tags/v1.0"))
        assert run.instances["release"].status is Status.SUCCEEDED
        assert run.instances["main"].status is Status.SKIPPED

    def test_invalid_condition_fails_job(self, make_scheduler):
        wf = workflow("jobs: {a: {if: 'matrix.os ==', steps: [{run: echo a}]}}")
        run = make_scheduler().run(wf)
        assert run.instances["a"].status is Status.FAILED
        assert run.instances["a"].reason.startswith("invalid condition")
        assert run.status is Status.FAILED


class TestOutputsAndEnv:
    def test_step_and_job_outputs(self, make_scheduler, workspace):
        wf = workflow(
            """
            jobs:
              build:
                outputs: {version: "${{ steps.meta.outputs.version }}"}
                steps:
                  - id: meta
                    run: |
                      echo "version=1.4.2" >> "$GANTRY_OUTPUT"
                      printf 'notes<<EOF\\nline one\\nline two\\nEOF\\n' >> "$GANTRY_OUTPUT"
                  - run: echo "${{ steps.meta.outputs.notes }}" > notes.txt
              publish:
                needs: build
                env: {VERSION: "${{ needs.build.outputs.version }}"}
                steps: [{run: echo "$VERSION" > version.txt}]
            """
        )
        run = make_scheduler().run(wf)
        assert run.status is Status.SUCCEEDED
        assert run.instances["build"].outputs == {"version": "1.4.2"}
        assert (workspace / "version.txt").read_text().strip() == "1.4.2"
        assert (workspace / "notes.txt").read_text().splitlines() == ["line one", "line two"]

    def test_injected_environment(self, make_scheduler, workspace, monkeypatch):
        monkeypatch.setenv("GANTRY_SECRET_LEAK", "should-not-leak")
        wf = workflow(
            """
            name: envcheck
            env: {LEVEL: workflow, SHARED: workflow}
            jobs:
              a:
                env: {SHARED: job}
                steps:
                  - env: {STEP: "${{ gantry.event }}"}
                    run: >
                      echo "$GANTRY|$GANTRY_RUN_ID|$GANTRY_JOB|$GANTRY_EVENT|$GANTRY_REF|$GANTRY_SHA|$GANTRY_ACTOR|$LEVEL|$SHARED|$STEP|${GANTRY_SECRET_LEAK:-none}" > env.txt
            """
        )
        run = make_scheduler().run(wf, Trigger(event="push", ref="refs/heads/dev", sha="abc", actor="sam"))
        fields = (workspace / "env.txt").read_text().strip().split("|")
        assert fields == ["true", str(run.id), "a", "push", "refs/heads/dev", "abc", "sam", "workflow", "job", "push", "none"]

    def test_working_directory(self, make_scheduler, workspace):
        (workspace / "sub").mkdir()
        wf = workflow("jobs: {a: {steps: [{run: pwd > here.txt, working-directory: sub}]}}")
        make_scheduler().run(wf)
        assert (workspace / "sub" / "here.txt").read_text().strip() == str(workspace.resolve() / "sub")


class TestMatrix:
    def test_instances(self, make_scheduler, workspace):
        wf = workflow(
            """
            jobs:
              test:
                strategy:
                  matrix:
                    os: [a, b]
                    version: [1, 2]
                    exclude: [{os: a, version: 2}]
                steps: [{run: "echo ${{ matrix.os }}-${{ matrix.version }} >> m.txt"}]
            """
        )
        run = make_scheduler().run(wf)
        assert list(run.instances) == ["test (a, 1)", "test (b, 1)", "test (b, 2)"]
        assert sorted((workspace / "m.txt").read_text().split()) == ["a-1", "b-1", "b-2"]

    def test_dependent_waits_for_all_instances(self, make_scheduler, workspace):
        wf = workflow(
            """
            jobs:
              test:
                strategy: {matrix: {n: [1, 2, 3]}}
                steps: [{run: "sleep 0.0${{ matrix.n }} && echo t >> out.txt"}]
              report: {needs: test, steps: [{run: wc -l < out.txt > count.txt}]}
            """
        )
        make_scheduler().run(wf)
        assert (workspace / "count.txt").read_text().strip() == "3"

    def test_fail_fast_cancels_siblings(self, make_scheduler):
        wf = workflow(
            """
            jobs:
              test:
                strategy: {matrix: {cmd: ["exit 1", "sleep 10"]}}
                steps: [{run: "${{ matrix.cmd }}"}]
            """
        )
        started = time.monotonic()
        run = make_scheduler().run(wf)
        assert time.monotonic() - started < 8
        assert run.instances["test (exit 1)"].status is Status.FAILED
        assert run.instances["test (sleep 10)"].status is Status.CANCELLED
        assert "fail-fast" in run.instances["test (sleep 10)"].reason
        assert run.status is Status.FAILED

    def test_fail_fast_disabled(self, make_scheduler):
        wf = workflow(
            """
            jobs:
              test:
                strategy: {matrix: {cmd: ["exit 1", "sleep 0.2"]}, fail-fast: false}
                steps: [{run: "${{ matrix.cmd }}"}]
            """
        )
        run = make_scheduler().run(wf)
        assert run.instances["test (sleep 0.2)"].status is Status.SUCCEEDED
        assert run.status is Status.FAILED

    def test_max_parallel(self, make_scheduler):
        # the lock directory collides if two instances overlap
        wf = workflow(
            """
            jobs:
              test:
                strategy: {matrix: {n: [1, 2, 3]}, max-parallel: 1}
                steps: [{run: "mkdir lock && sleep 0.1 && rmdir lock"}]
            """
        )
        run = make_scheduler().run(wf)
        assert run.status is Status.SUCCEEDED


class TestCancellation:
    WF = """
        jobs:
          fast: {steps: [{run: echo fast}]}
          slow: {needs: fast, steps: [{run: sleep 10}]}
          after: {needs: slow, if: always(), steps: [{run: echo after}]}
        """

    def _start(self, make_scheduler):
        scheduler = make_scheduler()
        run = scheduler.create_run(workflow(self.WF), Trigger())
        thread = threading.Thread(target=scheduler.execute, args=(run,))
        thread.start()
        wait_for(lambda: run.instances["slow"].status is Status.RUNNING)
        time.sleep(0.1)
        return scheduler, run, thread

    def _assert_cancelled(self, run):
        assert run.status is Status.CANCELLED
        assert run.instances["fast"].status is Status.SUCCEEDED
        assert run.instances["slow"].status is Status.CANCELLED
        assert run.instances["after"].status is Status.CANCELLED

    def test_cancel(self, make_scheduler):
        scheduler, run, thread = self._start(make_scheduler)
        started = time.monotonic()
        scheduler.cancel(run.id)
        thread.join(timeout=8)
        assert not thread.is_alive()
        assert time.monotonic() - started < 5
        self._assert_cancelled(run)

    def test_cancel_through_state_store(self, make_scheduler, state):
        _, run, thread = self._start(make_scheduler)
        state.request_cancel(run.id)
        thread.join(timeout=8)
        assert not thread.is_alive()
        self._assert_cancelled(run)
        assert state.get_run(run.id).status == "cancelled"

    def test_failed_instance_outweighs_cancelled_sibling(self, make_scheduler):
        wf = workflow(
            """
            jobs:
              test:
                strategy: {matrix: {cmd: ["exit 1", "sleep 10"]}}
                steps: [{run: "${{ matrix.cmd }}"}]
              report: {needs: test, if: "!failure()", steps: [{run: echo r}]}
            """
        )
        run = make_scheduler().run(wf)
        assert run.instances["report"].status is Status.SKIPPED


class TestTimeout:
    def test_job_timeout(self, make_scheduler):
        wf = workflow(
            """
            jobs:
              slow: {timeout-minutes: 0.005, steps: [{run: sleep 10}]}
              next: {needs: slow, steps: [{run: echo next}]}
            """
        )
        started = time.monotonic()
        run = make_scheduler().run(wf)
        assert time.monotonic() - started < 5
        assert run.instances["slow"].status is Status.FAILED
        assert "timed out" in run.instances["slow"].reason
        assert run.instances["next"].status is Status.SKIPPED


class TestSecrets:
    def test_declared_secret_is_masked(self, make_scheduler):
        wf = workflow(
            """
            jobs:
              a: {secrets: [TOKEN], steps: [{run: echo "token is $TOKEN"}]}
            """
        )
        run = make_scheduler(secrets=SecretStore({"TOKEN": "tok-123"})).run(wf)
        assert run.status is Status.SUCCEEDED
        assert "token is ***" in run.instances["a"].log
        assert all("tok-123" not in line for line in run.instances["a"].log)

    def test_scoped_to_declaring_job(self, make_scheduler):
        wf = workflow(
            """
            jobs:
              a: {secrets: [TOKEN], steps: [{run: test -n "$TOKEN"}]}
              b: {steps: [{run: test -z "$TOKEN"}]}
              c: {steps: [{run: 'echo "${{ secrets.TOKEN }}"'}]}
            """
        )
        run = make_scheduler(secrets=SecretStore({"TOKEN": "tok-123"})).run(wf)
        assert run.instances["a"].status is Status.SUCCEEDED
        assert run.instances["b"].status is Status.SUCCEEDED
        assert run.instances["c"].status is Status.FAILED
        assert "did not declare" in run.instances["c"].reason

    def test_undefined_secret_fails_job(self, make_scheduler):
        wf = workflow("jobs: {a: {secrets: [NOPE], steps: [{run: echo a}]}}")
        run = make_scheduler().run(wf)
        assert run.instances["a"].status is Status.FAILED
        assert "not defined" in run.instances["a"].reason

    def test_masked_in_persisted_log(self, make_scheduler, state):
        wf = workflow("jobs: {a: {secrets: [TOKEN], steps: [{run: echo $TOKEN}]}}")
        run = make_scheduler(secrets=SecretStore({"TOKEN": "tok-123"})).run(wf)
        rec = state.get_run(run.id)
        assert "tok-123" not in rec.jobs[0].log
        assert "***" in rec.jobs[0].log


class TestApproval:
    WF = """
        jobs:
          deploy: {environment: production, steps: [{run: echo deploy}]}
          smoke: {needs: deploy, steps: [{run: echo smoke}]}
        """

    def test_denied(self, make_scheduler):
        run = make_scheduler(approver=static_approver({"production": False})).run(workflow(self.WF))
        assert run.instances["deploy"].status is Status.FAILED
        assert "not approved" in run.instances["deploy"].reason
        assert run.instances["smoke"].status is Status.SKIPPED

    def test_approver_called_with_environment(self, make_scheduler):
        calls = []

        def approver(run, instance, environment):
            calls.append((instance.name, environment))
            return True

        run = make_scheduler(approver=approver).run(workflow(self.WF))
        assert run.status is Status.SUCCEEDED
        assert calls == [("deploy", "production")]

    def test_asked_before_running(self, make_scheduler, state):
        seen = []

        def approver(run, instance, environment):
            seen.append(instance.status)
            seen.append({j.name: j.status for j in state.get_run(run.id).jobs}["deploy"])
            return True

        run = make_scheduler(approver=approver).run(workflow(self.WF))
        assert run.status is Status.SUCCEEDED
        assert seen == [Status.READY, "ready"]

    def test_approval_wait_not_counted_in_timeout(self, make_scheduler):
        wf = workflow('jobs: {deploy: {environment: prod, timeout-minutes: 0.01, steps: [{run: "true"}]}}')

        def slow(run, instance, environment):
            time.sleep(1.0)
            return True

        run = make_scheduler(approver=slow).run(wf)
        assert run.instances["deploy"].status is Status.SUCCEEDED

    def test_waiting_does_not_hold_a_worker(self, make_scheduler, settings, workspace):
        wf = workflow(
            """
            jobs:
              deploy: {environment: prod, steps: [{run: echo deploy}]}
              build: {steps: [{run: touch built.txt}]}
            """
        )

        def after_build(run, instance, environment):
            wait_for((workspace / "built.txt").exists)
            return True

        run = make_scheduler(settings=settings.override(max_parallel=1), approver=after_build).run(wf)
        assert statuses(run) == {"deploy": Status.SUCCEEDED, "build": Status.SUCCEEDED}

    def test_cancelled_while_waiting(self, make_scheduler, workspace):
        wf = workflow("jobs: {deploy: {environment: prod, steps: [{run: touch deployed.txt}]}}")
        release = threading.Event()
        asked = threading.Event()

        def blocked(run, instance, environment):
            asked.set()
            release.wait(5)
            return True

        scheduler = make_scheduler(approver=blocked)
        run = scheduler.create_run(wf, Trigger())
        worker = threading.Thread(target=scheduler.execute, args=(run,))
        worker.start()
        assert asked.wait(5)
        scheduler.cancel(run.id)
        worker.join(5)
        release.set()
        assert not worker.is_alive()
        assert run.status is Status.CANCELLED
        assert run.instances["deploy"].status is Status.CANCELLED
        assert not (workspace / "deployed.txt").exists()

    def test_environment_secrets(self, make_scheduler, workspace):
        wf = workflow(
            """
            jobs:
              deploy: {environment: production, secrets: [TOKEN], steps: [{run: printf %s "$TOKEN" > t.txt}]}
            """
        )
        secrets = SecretStore({"TOKEN": "dev"}, {"production": {"TOKEN": "prod"}})
        make_scheduler(secrets=secrets).run(wf)
        assert (workspace / "t.txt").read_text() == "prod"


class TestBuiltinActions:
    def test_cache_save_then_restore(self, make_scheduler, workspace):
        (workspace / "req.txt").write_text("click\n")
        save = workflow(
            """
            permissions: {cache: write}
            jobs:
              a:
                steps:
                  - run: mkdir -p deps && echo v1 > deps/lib
                  - uses: cache/save
                    with: {key: "deps-${{ hashFiles('req.txt') }}", path: deps}
            """
        )
        restore = workflow(
            """
            permissions: {cache: read}
            jobs:
              a:
                steps:
                  - run: rm -rf deps
                  - id: c
                    uses: cache/restore
                    with: {key: "deps-${{ hashFiles('req.txt') }}", restore-keys: [deps-]}
                  - run: test "${{ steps.c.outputs.cache-hit }}" = true && cat deps/lib
            """
        )
        scheduler = make_scheduler()
        assert scheduler.run(save).status is Status.SUCCEEDED
        run = scheduler.run(restore)
        assert run.status is Status.SUCCEEDED
        assert "v1" in run.instances["a"].log

    def test_cache_requires_permission(self, make_scheduler):
        wf = workflow(
            """
            jobs:
              a:
                steps:
                  - uses: cache/save
                    with: {key: k, path: deps}
            """
        )
        run = make_scheduler().run(wf)
        assert run.instances["a"].status is Status.FAILED
        assert "cache: write" in run.instances["a"].reason

    def test_artifact_between_jobs(self, make_scheduler, workspace, artifacts):
        wf = workflow(
            """
            permissions: {artifacts: write}
            jobs:
              build:
                steps:
                  - run: mkdir -p dist && echo wheel > dist/pkg.whl
                  - uses: artifact/upload
                    with: {name: dist, path: dist}
              check:
                needs: build
                permissions: {artifacts: read}
                steps:
                  - run: rm -rf dist
                  - uses: artifact/download
                    with: {name: dist, path: out}
                  - run: grep wheel out/dist/pkg.whl
            """
        )
        run = make_scheduler(artifacts=artifacts).run(wf)
        assert run.status is Status.SUCCEEDED
        assert [r.name for r in artifacts.list(run.id)] == ["dist"]

    UPLOAD = """
        permissions: {artifacts: write}
        jobs:
          build:
            steps:
              - run: mkdir -p dist && echo wheel > dist/pkg.whl
              - uses: artifact/upload
                with: {name: dist, path: dist}
              - run: %s
        """

    @staticmethod
    def download(run_id, path="fetched"):
        return workflow(
            f"""
            permissions: {{artifacts: read}}
            jobs:
              deploy:
                steps:
                  - uses: artifact/download
                    with: {{name: dist, path: {path}, run-id: {run_id}}}
            """
        )

    def test_download_from_upstream_run(self, make_scheduler, workspace):
        scheduler = make_scheduler()
        upstream = scheduler.run(workflow(self.UPLOAD % "echo ok"))
        assert upstream.status is Status.SUCCEEDED

        run = scheduler.run(self.download(upstream.id))
        assert run.status is Status.SUCCEEDED, run.reason
        assert (workspace / "fetched" / "dist" / "pkg.whl").read_text().strip() == "wheel"

    def test_download_from_failed_upstream(self, make_scheduler):
        scheduler = make_scheduler()
        upstream = scheduler.run(workflow(self.UPLOAD % "exit 1"))
        assert upstream.status is Status.FAILED

        run = scheduler.run(self.download(upstream.id))
        assert run.instances["deploy"].status is Status.FAILED
        assert f"upstream run {upstream.id} has not succeeded (status: failed)" in run.instances["deploy"].reason

    def test_download_from_unfinished_upstream(self, make_scheduler):
        scheduler = make_scheduler()
        pending = scheduler.create_run(workflow(self.UPLOAD % "echo ok"), Trigger())

        run = scheduler.run(self.download(pending.id))
        assert run.instances["deploy"].status is Status.FAILED
        assert "has not succeeded (status: pending)" in run.instances["deploy"].reason

    def test_download_bad_run_id(self, make_scheduler):
        run = make_scheduler().run(self.download("latest"))
        assert run.instances["deploy"].status is Status.FAILED
        assert "run-id must be a run number, got 'latest'" in run.instances["deploy"].reason

    def test_download_outside_workspace(self, make_scheduler):
        scheduler = make_scheduler()
        upstream = scheduler.run(workflow(self.UPLOAD % "echo ok"))
        run = scheduler.run(self.download(upstream.id, path="../escape"))
        assert run.instances["deploy"].status is Status.FAILED
        assert "outside the workspace" in run.instances["deploy"].reason

    def test_upload_outside_workspace(self, make_scheduler, workspace):
        (workspace.parent / "secret.txt").write_text("x")
        wf = workflow(
            """
            permissions: {artifacts: write}
            jobs:
              a: {steps: [{uses: artifact/upload, with: {name: leak, path: ../secret.txt}}]}
            """
        )
        run = make_scheduler().run(wf)
        assert run.instances["a"].status is Status.FAILED
        assert "outside the workspace" in run.instances["a"].reason
        assert "internal error" not in run.instances["a"].reason

    def test_missing_artifact_fails_step(self, make_scheduler):
        wf = workflow(
            """
            permissions: {artifacts: read}
            jobs:
              a: {steps: [{uses: artifact/download, with: {name: nope}}]}
            """
        )
        run = make_scheduler().run(wf)
        assert "not found" in run.instances["a"].reason

    def test_custom_action(self, make_scheduler):
        class Record(Action):
            name = "test/record"

            def __init__(self):
                self.contexts = []

            def execute(self, ctx):
                self.contexts.append(ctx)
                return ActionResult(outputs={"echo": str(ctx.input("value"))})

        record = Record()
        actions = builtin_actions()
        actions[record.name] = record
        wf = workflow(
            """
            jobs:
              a:
                strategy: {matrix: {os: [linux]}}
                outputs: {got: "${{ steps.r.outputs.echo }}"}
                steps: [{id: r, uses: test/record, with: {value: "${{ matrix.os }}"}}]
            """
        )
        run = make_scheduler(actions=actions).run(wf)
        assert run.instances["a (linux)"].outputs == {"got": "linux"}
        ctx = record.contexts[0]
        assert ctx.env["GANTRY_JOB"] == "a"
        with pytest.raises(TypeError):
            ctx.env["GANTRY_JOB"] = "b"


class TestReusable:
    def _files(self, tmp_path):
        d = tmp_path / "wf"
        d.mkdir()
        (d / "deploy.yml").write_text(
            textwrap.dedent(
                """
                on:
                  workflow_call:
                    inputs:
                      version: {type: string, required: true}
                    secrets:
                      TOKEN: {required: true}
                    outputs:
                      url: {value: "${{ jobs.ship.outputs.url }}"}
                jobs:
                  ship:
                    secrets: [TOKEN]
                    outputs: {url: "${{ steps.s.outputs.url }}"}
                    steps:
                      - id: s
                        run: |
                          test -n "$TOKEN"
                          echo "url=https://example.test/${{ inputs.version }}" >> "$GANTRY_OUTPUT"
                """
            )
        )
        (d / "ci.yml").write_text(
            textwrap.dedent(
                """
                jobs:
                  build:
                    outputs: {version: "${{ steps.v.outputs.version }}"}
                    steps: [{id: v, run: 'echo "version=1.2" >> "$GANTRY_OUTPUT"'}]
                  deploy:
                    needs: build
                    uses: ./deploy.yml
                    with: {version: "${{ needs.build.outputs.version }}"}
                    secrets: inherit
                  report:
                    needs: deploy
                    steps: [{run: 'echo "${{ needs.deploy.outputs.url }}" > url.txt'}]
                """
            )
        )
        (d / "self.yml").write_text("on: {workflow_call: {}}\njobs: {again: {uses: ./self.yml}}\n")
        return d

    def test_sub_run(self, make_scheduler, tmp_path, workspace, state):
        d = self._files(tmp_path)
        run = make_scheduler(secrets=SecretStore({"TOKEN": "tok-xyz-123"})).run(load_definition(d / "ci.yml"))
        assert run.status is Status.SUCCEEDED, run.reason
        assert run.instances["deploy"].outputs == {"url": "https://example.test/1.2"}
        assert (workspace / "url.txt").read_text().strip() == "https://example.test/1.2"

        children = [r for r in state.list_runs() if r.parent_run_id == run.id]
        assert len(children) == 1
        assert children[0].status == "succeeded"
        assert children[0].inputs == {"version": "1.2"}

    def test_required_secret_missing(self, make_scheduler, tmp_path):
        d = self._files(tmp_path)
        run = make_scheduler().run(load_definition(d / "ci.yml"))
        assert run.instances["deploy"].status is Status.FAILED
        assert "requires secret 'TOKEN'" in run.instances["deploy"].reason
        assert run.instances["report"].status is Status.SKIPPED

    def test_failed_sub_run_fails_caller(self, make_scheduler, tmp_path, state):
        d = self._files(tmp_path)
        (d / "broken.yml").write_text(
            "on: {workflow_call: {}}\njobs: {boom: {steps: [{run: echo broken && exit 4}]}}\n"
        )
        (d / "caller.yml").write_text(
            textwrap.dedent(
                """
                jobs:
                  call: {uses: ./broken.yml}
                  after: {needs: call, steps: [{run: echo after}]}
                  again: {needs: after, steps: [{run: echo again}]}
                """
            )
        )
        run = make_scheduler().run(load_definition(d / "caller.yml"))
        assert run.status is Status.FAILED
        assert statuses(run) == {"call": Status.FAILED, "after": Status.SKIPPED, "again": Status.SKIPPED}
        reason = run.instances["call"].reason
        assert "failed: boom:" in reason
        assert "exit=4" in reason
        assert run.instances["after"].reason == "dependency 'call' failed"

        child = next(r for r in state.list_runs() if r.parent_run_id == run.id)
        assert child.status == "failed"
        assert [j.status for j in child.jobs] == ["failed"]

    def test_secret_inputs_masked_in_record(self, make_scheduler, tmp_path, state):
        d = self._files(tmp_path)
        (d / "leak.yml").write_text(
            textwrap.dedent(
                """
                jobs:
                  deploy:
                    uses: ./deploy.yml
                    with: {version: "${{ secrets.TOKEN }}"}
                    secrets: inherit
                """
            )
        )
        run = make_scheduler(secrets=SecretStore({"TOKEN": "tok-xyz-123"})).run(load_definition(d / "leak.yml"))
        assert run.status is Status.SUCCEEDED, run.reason
        child = next(r for r in state.list_runs() if r.parent_run_id == run.id)
        assert child.inputs == {"version": "***"}

    def test_nesting_limit(self, make_scheduler, tmp_path, state):
        d = self._files(tmp_path)
        with pytest.raises(DefinitionError, match="nested deeper"):
            make_scheduler().create_run(load_definition(d / "self.yml"), Trigger())
        assert state.list_runs() == []


class TestStructuralErrors:
    def test_cycle_creates_no_run(self, make_scheduler, state):
        wf = workflow(
            """
            jobs:
              a: {needs: b, steps: [{run: echo a}]}
              b: {needs: a, steps: [{run: echo b}]}
            """
        )
        with pytest.raises(CycleError):
            make_scheduler().create_run(wf, Trigger())
        assert state.list_runs() == []

    def test_unknown_action(self, make_scheduler):
        wf = workflow("jobs: {a: {steps: [{uses: nope/action}]}}")
        with pytest.raises(DefinitionError, match="unknown action 'nope/action'"):
            make_scheduler().create_run(wf, Trigger())

    def test_execute_requires_create_run(self, make_scheduler):
        from gantry.model import Run

        wf = workflow("jobs: {a: {steps: [{run: echo a}]}}")
        with pytest.raises(ValueError):
            make_scheduler().execute(Run(id=999, definition=wf, trigger=Trigger()))


class TestPersistence:
    def test_run_and_jobs_recorded(self, make_scheduler, state):
        wf = workflow(
            """
            name: persisted
            jobs:
              ok: {steps: [{run: echo ok}]}
              bad: {steps: [{run: exit 2}]}
            """
        )
        run = make_scheduler().run(wf, Trigger(event="push", sha="deadbeef"))
        rec = state.get_run(run.id)
        assert rec.workflow == "persisted"
        assert rec.status == "failed"
        assert rec.sha == "deadbeef"
        assert rec.finished_at is not None
        jobs = {j.name: j for j in rec.jobs}
        assert jobs["ok"].status == "succeeded"
        assert jobs["ok"].log == "ok"
        assert jobs["bad"].status == "failed"
        assert jobs["bad"].started_at is not None
