from __future__ import annotations

from stageci.dsl import Defaults, collect_artifacts, extend, job, pipeline, script, sh
from stageci.model import Pipeline
from stageci.rules import BUILD_REFS, NIGHTLY_TEST, TEST_REFS
from stageci.step_workflows import description_job, image_job

DEFAULTS = Defaults(
    variables={
        "GIT_DEPTH": "100",
        "CARGO_INCREMENTAL": "0",
        "ARCH": "x86_64",
        "RUST_BACKTRACE": "full",
    },
)

TOOLCHAIN = script(
    "rustup show",
    "cargo --version",
    "rustup +nightly show",
    "cargo +nightly --version",
)

CHECK = script(
    "SKIP_WASM_BUILD=1 time cargo check --locked --verbose --workspace",
    "SKIP_WASM_BUILD=1 time cargo check -p rialto-runtime --locked --features runtime-benchmarks --verbose",
    "SKIP_WASM_BUILD=1 time cargo check -p millau-runtime --locked --features runtime-benchmarks --verbose",
)

FETCH = script(
    "time cargo fetch",
    "time cargo fetch --manifest-path=`cargo metadata --format-version=1 | jq --compact-output --raw-output "
    "'.packages[] | select(.name == \"polkadot-runtime\").manifest_path'`",
    "time cargo fetch --manifest-path=`cargo metadata --format-version=1 | jq --compact-output --raw-output "
    "'.packages[] | select(.name == \"kusama-runtime\").manifest_path'`",
)

OFFLINE = (
    "CARGO_NET_OFFLINE=true SKIP_POLKADOT_RUNTIME_WASM_BUILD=1 SKIP_KUSAMA_RUNTIME_WASM_BUILD=1 "
    "SKIP_POLKADOT_TEST_RUNTIME_WASM_BUILD=1"
)

TEST = FETCH + [sh("cargo test", f"{OFFLINE} time cargo test --verbose --workspace")]
BUILD = FETCH + [sh("cargo build", f"{OFFLINE} time cargo build --release --verbose --workspace")]

BINARIES = ("rialto-bridge-node", "rialto-parachain-collator", "millau-bridge-node", "substrate-relay")

PREPARE_ARTIFACTS = (
    [sh("mkdir artifacts", "mkdir -p ./artifacts")]
    + [
        step
        for binary in BINARIES
        for step in (
            sh(f"strip {binary}", f"strip ./target/release/{binary}"),
            sh(f"collect {binary}", f"mv -v ./target/release/{binary} ./artifacts/"),
        )
    ]
    + script(
        "mv -v ./deployments/local-scripts/bridge-entrypoint.sh ./artifacts/",
        "mv -v ./ci.Dockerfile ./artifacts/",
    )
)

BENCH_PALLETS = ("pallet_bridge_messages", "pallet_bridge_grandpa", "pallet_bridge_parachains", "pallet_bridge_relayers")


def _cargo_job(name: str, stage: str, steps, rules, **kwargs):
    return job(name, steps_list=TOOLCHAIN + list(steps), stage=stage, rules=rules, defaults=DEFAULTS, **kwargs)


def workflow() -> Pipeline:
    check = _cargo_job("check", "check", CHECK, TEST_REFS)
    test = _cargo_job("test", "test", TEST, TEST_REFS)
    build = _cargo_job("build", "build", BUILD, BUILD_REFS, after=PREPARE_ARTIFACTS, artifacts=collect_artifacts())

    return pipeline(
        # ---- lint ----
        _cargo_job(
            "clippy-nightly",
            "lint",
            script(
                "SKIP_WASM_BUILD=1 cargo +nightly clippy --all-targets -- -A clippy::redundant_closure "
                "-A clippy::derive-partial-eq-without-eq -A clippy::or_fun_call"
            ),
            TEST_REFS,
            variables={"RUSTFLAGS": "-D warnings"},
        ),
        _cargo_job("fmt", "lint", script("cargo +nightly fmt --all -- --check"), TEST_REFS),
        _cargo_job(
            "spellcheck",
            "lint",
            script(
                "cargo spellcheck check --cfg=.config/spellcheck.toml --checkers hunspell -m 1 "
                "$(find . -type f -name '*.rs' ! -path './target/*' ! -name 'codegen_runtime.rs' ! -name 'weights.rs')"
            ),
            TEST_REFS,
        ),
        # ---- check ----
        check,
        extend(
            check,
            "check-nightly",
            steps=TOOLCHAIN + script("rustup default nightly") + CHECK,
            rules=NIGHTLY_TEST,
        ),
        # ---- test ----
        test,
        extend(
            test,
            "test-nightly",
            steps=TOOLCHAIN + script("rustup default nightly") + TEST,
            rules=NIGHTLY_TEST,
        ),
        _cargo_job(
            "deny",
            "test",
            script(
                "cargo deny check advisories --hide-inclusion-graph",
                "cargo deny check bans sources --hide-inclusion-graph",
            ),
            NIGHTLY_TEST,
            after=script(
                "mkdir -p ./artifacts",
                "echo '___Complete logs can be found in the artifacts___'",
                "cargo deny check advisories 2> advisories.log",
                "cargo deny check bans sources 2> bans_sources.log",
            ),
            artifacts=collect_artifacts(),
            # only the licenses check is important
            allow_failure=True,
        ),
        _cargo_job(
            "deny-licenses",
            "test",
            script("cargo deny check licenses --hide-inclusion-graph"),
            TEST_REFS,
            after=script(
                "mkdir -p ./artifacts",
                "echo '___Complete logs can be found in the artifacts___'",
                "cargo deny check licenses 2> licenses.log",
            ),
            artifacts=collect_artifacts(),
        ),
        _cargo_job(
            "benchmarks-test",
            "test",
            [
                sh(
                    f"bench {pallet}",
                    "time cargo run --release -p millau-bridge-node --features=runtime-benchmarks -- "
                    f"benchmark pallet --chain=dev --steps=2 --repeat=1 --pallet={pallet} --extrinsic=* "
                    "--execution=wasm --wasm-execution=Compiled --heap-pages=4096",
                )
                for pallet in BENCH_PALLETS
            ],
            NIGHTLY_TEST,
            allow_failure=True,
        ),
        _cargo_job(
            "partial-repo-build-test",
            "test",
            script("./scripts/verify-pallets-build.sh --no-revert"),
            NIGHTLY_TEST,
            allow_failure=True,
        ),
        # ---- build ----
        build,
        extend(
            build,
            "build-nightly",
            steps=TOOLCHAIN + script("rustup default nightly") + BUILD,
            rules=NIGHTLY_TEST,
        ),
        # ---- publish ----
        [image_job(binary, defaults=DEFAULTS) for binary in BINARIES],
        image_job("bridges-common-relay", project="substrate-relay", defaults=DEFAULTS),
        # ---- publish-docker-description ----
        [description_job(f"dockerhub-{image}", defaults=DEFAULTS) for image in BINARIES + ("bridges-common-relay",)],
    )
