from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
import tempfile
import unittest

from core.command_runner import RecordingCommandRunner
from depforge.artifact_store import ARCHIVE_NAME, ArtifactStore
from depforge.context import BuildContext
from depforge.dependency_cache import DependencyCacheBuilder, cache_key_for, dependency_fingerprint
from depforge.errors import DependencyBuildFailed, SourceUnreadable
from depforge.manifest import Dependency
from depforge.platforms import PlatformId

from fakes import FakeToolchain, make_manifest, make_spec


class DependencyFingerprintTests(unittest.TestCase):
    def test_declaration_order_is_irrelevant(self) -> None:
        first = Dependency(name="serde", version="1.0.200", integrity="sha256-aaa")
        second = Dependency(name="libc", version="0.2.150", integrity="sha256-bbb")
        self.assertEqual(dependency_fingerprint([first, second]), dependency_fingerprint([second, first]))

    def test_integrity_change_changes_fingerprint(self) -> None:
        before = Dependency(name="serde", version="1.0.200", integrity="sha256-aaa")
        after = Dependency(name="serde", version="1.0.200", integrity="sha256-ccc")
        self.assertNotEqual(dependency_fingerprint([before]), dependency_fingerprint([after]))


class DependencyCacheBuilderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.workspace = Path(self.temp_dir.name)
        self.store = ArtifactStore(self.workspace / "store")
        self.platform = PlatformId("linux", "x64")
        self.spec = make_spec()
        self.manifest = make_manifest()
        self.toolchain = FakeToolchain(self.platform)
        self.builder = DependencyCacheBuilder()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _context(self, *, use_cache: bool = True, dry_run: bool = False) -> BuildContext:
        return BuildContext(
            spec=self.spec,
            platform=self.platform,
            store=self.store,
            runner=RecordingCommandRunner(dry_run=dry_run),
            output_root=self.workspace / "out",
            use_cache=use_cache,
        )

    def test_second_request_reuses_cached_artifacts(self) -> None:
        first = self.builder.obtain(self._context(), self.manifest, self.toolchain)
        second = self.builder.obtain(self._context(), self.manifest, self.toolchain)

        self.assertFalse(first.hit)
        self.assertTrue(second.hit)
        self.assertEqual(self.toolchain.calls["deps"], 1)
        self.assertEqual(first.artifacts.key, second.artifacts.key)
        self.assertEqual(second.artifacts.files, ("lib/libdeps.rlib",))
        self.assertTrue((second.artifacts.root / "lib" / "libdeps.rlib").is_file())

    def test_cache_survives_a_new_store_instance(self) -> None:
        self.builder.obtain(self._context(), self.manifest, self.toolchain)
        self.store = ArtifactStore(self.workspace / "store")
        outcome = self.builder.obtain(self._context(), self.manifest, self.toolchain)
        self.assertTrue(outcome.hit)
        self.assertEqual(self.toolchain.calls["deps"], 1)

    def test_manifest_change_builds_new_key_once(self) -> None:
        original = self.builder.obtain(self._context(), self.manifest, self.toolchain)
        changed = make_manifest(
            Dependency(name="serde", version="1.0.200", integrity="sha256-changed"),
            Dependency(name="libc", version="0.2.150", integrity="sha256-bbb"),
        )
        first = self.builder.obtain(self._context(), changed, self.toolchain)
        second = self.builder.obtain(self._context(), changed, self.toolchain)

        self.assertNotEqual(original.artifacts.key, first.artifacts.key)
        self.assertFalse(first.hit)
        self.assertTrue(second.hit)
        self.assertEqual(self.toolchain.calls["deps"], 2)
        self.assertTrue(self.store.contains(original.artifacts.key))

    def test_toolchain_change_is_a_different_key(self) -> None:
        key = cache_key_for(self._context(), self.manifest.dependencies)
        self.spec = make_spec(version="2.0.0")
        self.assertNotEqual(key, cache_key_for(self._context(), self.manifest.dependencies))

    def test_corrupt_archive_is_rebuilt(self) -> None:
        first = self.builder.obtain(self._context(), self.manifest, self.toolchain)
        (self.store.entry_dir(first.artifacts.key) / ARCHIVE_NAME).write_bytes(b"not a zstd stream")

        with self.assertLogs("depforge.artifact_store", level="WARNING"):
            outcome = self.builder.obtain(self._context(), self.manifest, self.toolchain)
        self.assertFalse(outcome.hit)
        self.assertEqual(self.toolchain.calls["deps"], 2)
        self.assertTrue((outcome.artifacts.root / "lib" / "libdeps.rlib").is_file())

    def test_missing_unpacked_view_is_restored_from_archive(self) -> None:
        first = self.builder.obtain(self._context(), self.manifest, self.toolchain)
        (first.artifacts.root / "lib" / "libdeps.rlib").unlink()

        outcome = self.builder.obtain(self._context(), self.manifest, self.toolchain)
        self.assertTrue(outcome.hit)
        self.assertTrue((outcome.artifacts.root / "lib" / "libdeps.rlib").is_file())
        self.assertEqual(self.toolchain.calls["deps"], 1)

    def test_no_cache_forces_recompile(self) -> None:
        self.builder.obtain(self._context(), self.manifest, self.toolchain)
        outcome = self.builder.obtain(self._context(use_cache=False), self.manifest, self.toolchain)
        self.assertFalse(outcome.hit)
        self.assertEqual(self.toolchain.calls["deps"], 2)

    def test_no_cache_rebuild_replaces_unpacked_artifacts(self) -> None:
        class CountingToolchain(FakeToolchain):
            def compile(self, request):
                result = super().compile(request)
                (request.output_dir / "lib" / "libdeps.rlib").write_text(
                    f"build {self.calls['deps']}", encoding="utf-8"
                )
                return result

        toolchain = CountingToolchain(self.platform)
        first = self.builder.obtain(self._context(), self.manifest, toolchain)
        self.assertEqual((first.artifacts.root / "lib" / "libdeps.rlib").read_text(encoding="utf-8"), "build 1")

        rebuilt = self.builder.obtain(self._context(use_cache=False), self.manifest, toolchain)
        self.assertEqual((rebuilt.artifacts.root / "lib" / "libdeps.rlib").read_text(encoding="utf-8"), "build 2")
        cached = self.builder.obtain(self._context(), self.manifest, toolchain)
        self.assertTrue(cached.hit)
        self.assertEqual((cached.artifacts.root / "lib" / "libdeps.rlib").read_text(encoding="utf-8"), "build 2")

    def test_concurrent_requests_compile_once(self) -> None:
        toolchain = FakeToolchain(self.platform, delay=0.2)

        def _obtain(_: int):
            return self.builder.obtain(self._context(), self.manifest, toolchain)

        with ThreadPoolExecutor(max_workers=6) as executor:
            outcomes = list(executor.map(_obtain, range(6)))

        self.assertEqual(toolchain.calls["deps"], 1)
        self.assertEqual(sum(1 for outcome in outcomes if not outcome.hit), 1)
        self.assertEqual(len({outcome.artifacts.key for outcome in outcomes}), 1)

    def test_compile_failure_reports_diagnostic_and_caches_nothing(self) -> None:
        toolchain = FakeToolchain(self.platform, fail_stage="deps")
        with self.assertRaises(DependencyBuildFailed) as ctx:
            self.builder.obtain(self._context(), self.manifest, toolchain)

        error = ctx.exception
        self.assertEqual(error.stage, "dependencies")
        self.assertEqual(error.platform, "linux-x64")
        self.assertIn("error[E0425]", error.diagnostic)
        key = cache_key_for(self._context(), self.manifest.dependencies)
        self.assertFalse(self.store.contains(key))

    def test_dry_run_publishes_nothing(self) -> None:
        outcome = self.builder.obtain(self._context(dry_run=True), self.manifest, self.toolchain)
        self.assertFalse(outcome.hit)
        self.assertFalse(self.store.contains(outcome.artifacts.key))

    def test_dependency_inputs_are_staged(self) -> None:
        source_root = self.workspace / "src"
        source_root.mkdir()
        (source_root / "Cargo.lock").write_text("# locked\n", encoding="utf-8")
        seen: list[str] = []

        class InspectingToolchain(FakeToolchain):
            def compile(self, request):
                seen.extend(sorted(path.name for path in request.source_dir.iterdir()))
                return super().compile(request)

        builder = DependencyCacheBuilder(source_root=source_root, dependency_inputs=["Cargo.lock"])
        builder.obtain(self._context(), self.manifest, InspectingToolchain(self.platform))
        self.assertEqual(seen, ["Cargo.lock", "depforge.lock.json"])

    def test_missing_dependency_input_is_source_unreadable(self) -> None:
        builder = DependencyCacheBuilder(source_root=self.workspace, dependency_inputs=["Cargo.lock"])
        with self.assertRaises(SourceUnreadable):
            builder.obtain(self._context(), self.manifest, self.toolchain)


if __name__ == "__main__":
    unittest.main()
