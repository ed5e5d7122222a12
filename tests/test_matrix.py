from __future__ import annotations

from pathlib import Path
import tempfile
import textwrap
import unittest

from core.command_runner import RecordingCommandRunner
from depforge.artifact_store import ArtifactStore, CacheKey, DependencyArtifactSet
from depforge.context import BuildContext
from depforge.errors import PackageBuildFailed
from depforge.manifest import Dependency, NativeLibrary
from depforge.matrix import PlatformMatrixEvaluator
from depforge.native import NativeEnvironment
from depforge.package_builder import PackageBuilder
from depforge.platforms import PlatformId, parse_platforms
from depforge.source_filter import FilteredSourceTree, SourceFile

from fakes import FakeToolchain, FakeToolchainProvider, make_manifest, make_spec

MATRIX = parse_platforms(["linux-x64", "macos-arm64"])


class StaticLibraryResolver:
    def __init__(self, paths: dict[str, Path]) -> None:
        self.paths = paths

    def resolve(self, library, platform):
        return self.paths.get(library.name)


class PlatformMatrixEvaluatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.workspace = Path(self.temp_dir.name)
        self.source_root = self.workspace / "project"
        (self.source_root / "src").mkdir(parents=True)
        (self.source_root / "Cargo.toml").write_text(
            textwrap.dedent(
                """
                [package]
                name = "demo"
                version = "0.1.0"
                """
            ),
            encoding="utf-8",
        )
        (self.source_root / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
        self.store = ArtifactStore(self.workspace / "store")
        self.spec = make_spec()
        self.manifest = make_manifest()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _evaluate(self, provider: FakeToolchainProvider, platforms=MATRIX, *, manifest=None, native=None):
        evaluator = PlatformMatrixEvaluator(
            spec=self.spec,
            manifest=manifest or self.manifest,
            source_root=self.source_root,
            store=self.store,
            runner=RecordingCommandRunner(dry_run=False),
            toolchains=provider,
            output_root=self.workspace / "out",
            native=native,
            jobs=2,
        )
        return evaluator.evaluate(platforms)

    def test_builds_every_platform(self) -> None:
        provider = FakeToolchainProvider()
        report = self._evaluate(provider)

        self.assertTrue(report.ok)
        self.assertEqual(sorted(report.packages), ["linux-x64", "macos-arm64"])
        package = report.packages["linux-x64"]
        self.assertEqual(package.files, ("bin/demo",))
        binary = (package.root / "bin" / "demo").read_text(encoding="utf-8")
        self.assertIn("platform=linux-x64", binary)
        self.assertIn("src/main.rs", binary)
        self.assertIn("libdeps.rlib", binary)
        self.assertEqual(package.root, self.workspace / "out" / "linux-x64" / "demo-0.1.0")

    def test_package_failure_is_isolated_to_its_platform(self) -> None:
        provider = FakeToolchainProvider(fail={"linux-x64": "package"})
        report = self._evaluate(provider)

        self.assertFalse(report.ok)
        failed, succeeded = report.results
        self.assertEqual(str(failed.platform), "linux-x64")
        self.assertEqual(failed.stage, "package")
        self.assertIn("error[E0425]", failed.diagnostic)
        self.assertTrue(succeeded.ok)
        self.assertEqual([str(result.platform) for result in report.failed], ["linux-x64"])
        self.assertIn("FAILED in package", report.lines()[0])

    def test_unavailable_toolchain_is_reported_per_platform(self) -> None:
        provider = FakeToolchainProvider(unavailable=["macos-arm64"])
        report = self._evaluate(provider)

        linux, macos = report.results
        self.assertTrue(linux.ok)
        self.assertEqual(macos.stage, "toolchain")

    def test_results_follow_requested_order(self) -> None:
        provider = FakeToolchainProvider()
        report = self._evaluate(provider, platforms=list(reversed(MATRIX)))
        self.assertEqual([str(result.platform) for result in report.results], ["macos-arm64", "linux-x64"])

    def test_source_change_rebuilds_packages_only(self) -> None:
        provider = FakeToolchainProvider()
        first = self._evaluate(provider)
        (self.source_root / "src" / "main.rs").write_text("fn main() { println!(\"changed\"); }\n", encoding="utf-8")
        second = self._evaluate(provider)

        self.assertTrue(second.ok)
        self.assertEqual(provider.compiles("deps"), {"linux-x64": 1, "macos-arm64": 1})
        self.assertEqual(provider.compiles("package"), {"linux-x64": 2, "macos-arm64": 2})
        self.assertTrue(all(result.dependency_hit for result in second.results))
        for platform in MATRIX:
            name = str(platform)
            self.assertEqual(first.packages[name].dependency_key, second.packages[name].dependency_key)
            self.assertNotEqual(first.packages[name].source_digest, second.packages[name].source_digest)

    def test_integrity_change_rebuilds_dependencies_once_per_platform(self) -> None:
        provider = FakeToolchainProvider()
        first = self._evaluate(provider)
        changed = make_manifest(
            Dependency(name="serde", version="1.0.200", integrity="sha256-new"),
            Dependency(name="libc", version="0.2.150", integrity="sha256-bbb"),
        )
        second = self._evaluate(provider, manifest=changed)
        third = self._evaluate(provider, manifest=changed)

        self.assertTrue(second.ok and third.ok)
        self.assertEqual(provider.compiles("deps"), {"linux-x64": 2, "macos-arm64": 2})
        self.assertEqual(provider.compiles("package"), {"linux-x64": 3, "macos-arm64": 3})
        for platform in MATRIX:
            name = str(platform)
            self.assertNotEqual(first.packages[name].dependency_key, second.packages[name].dependency_key)
            self.assertEqual(second.packages[name].dependency_key, third.packages[name].dependency_key)

    def _native_manifest(self):
        manifest = make_manifest()
        manifest.native = [NativeLibrary(name="openssl", pkg_config="openssl", libraries=("ssl",))]
        return manifest

    def test_native_libraries_reach_both_build_stages(self) -> None:
        openssl_dir = self.workspace / "openssl" / "lib"
        (openssl_dir / "pkgconfig").mkdir(parents=True)
        native = NativeEnvironment(StaticLibraryResolver({"openssl": openssl_dir}), base_environment={})
        provider = FakeToolchainProvider()

        report = self._evaluate(provider, platforms=MATRIX[:1], manifest=self._native_manifest(), native=native)

        self.assertTrue(report.ok)
        environments = provider.toolchains["linux-x64"].environments
        for stage in ("deps", "package"):
            self.assertEqual(environments[stage]["PKG_CONFIG_PATH"], str(openssl_dir / "pkgconfig"))
            self.assertEqual(environments[stage]["LIBRARY_PATH"], str(openssl_dir))
            self.assertEqual(environments[stage]["LD_LIBRARY_PATH"], str(openssl_dir))

    def test_missing_native_library_fails_before_compiling(self) -> None:
        native = NativeEnvironment(StaticLibraryResolver({}), base_environment={})
        provider = FakeToolchainProvider()

        report = self._evaluate(provider, platforms=MATRIX[:1], manifest=self._native_manifest(), native=native)

        (result,) = report.results
        self.assertEqual(result.stage, "dependencies")
        self.assertIn("openssl", result.message)
        self.assertEqual(provider.compiles("deps"), {"linux-x64": 0})

    def test_unexpected_errors_become_internal_failures(self) -> None:
        class ExplodingProvider(FakeToolchainProvider):
            def resolve(self, spec, platform):
                if platform == PlatformId("macos", "arm64"):
                    raise KeyError("boom")
                return super().resolve(spec, platform)

        with self.assertLogs("depforge.matrix", level="ERROR"):
            report = self._evaluate(ExplodingProvider())
        linux, macos = report.results
        self.assertTrue(linux.ok)
        self.assertEqual(macos.stage, "internal")
        self.assertIn("KeyError", macos.message)


class PackageBuilderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.workspace = Path(self.temp_dir.name)
        self.store = ArtifactStore(self.workspace / "store")
        self.platform = PlatformId("linux", "x64")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_unstageable_sources_fail_the_package_stage_and_clean_up(self) -> None:
        context = BuildContext(
            spec=make_spec(),
            platform=self.platform,
            store=self.store,
            runner=RecordingCommandRunner(dry_run=False),
            output_root=self.workspace / "out",
        )
        # "src" is both a file and a directory, so writing the tree fails.
        tree = FilteredSourceTree(files=(SourceFile("src", b"file"), SourceFile("src/main.rs", b"fn main() {}")))
        artifacts = DependencyArtifactSet(
            key=CacheKey("linux-x64", "fake", "0" * 64),
            root=self.workspace / "deps",
            files=(),
            archive_sha256="",
        )
        toolchain = FakeToolchain(self.platform)

        with self.assertRaises(PackageBuildFailed) as ctx:
            PackageBuilder().build(context, tree, artifacts, make_manifest(), toolchain)

        self.assertEqual(ctx.exception.stage, "package")
        self.assertEqual(toolchain.calls["package"], 0)
        self.assertEqual(list((self.store.root / "tmp").iterdir()), [])


if __name__ == "__main__":
    unittest.main()
