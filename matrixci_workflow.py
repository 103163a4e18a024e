# matrixci_workflow.py
# The Integration pipeline: lint on one platform, check + test across three
# operating systems. Gated on main; pushes touching only Markdown are skipped.
from __future__ import annotations

from matrixci.dsl import job, matrix, on_merge_proposal, on_push, pipeline, sh, triggers

OSES = ["ubuntu-latest", "windows-latest", "macos-latest"]


def workflow():
    return pipeline(
        "Integration",
        job(
            "lint",
            sh("Install Rust nightly", "rustup toolchain install nightly --component rustfmt"),
            sh("Install cargo-llvm-cov", "cargo install cargo-llvm-cov --locked"),
            sh("Install cargo-make", "cargo install cargo-make --locked"),
            sh("Check formatting", "cargo make lint-format"),
            sh("Check documentation", "cargo make lint-docs"),
            sh("Check typos", "typos"),
            matrix=matrix(platform=["ubuntu-latest"]),
            requires=["cargo", "rustup"],
            inputs=["Cargo.toml", "Cargo.lock", "rust-toolchain.toml"],
            cache_dirs=["target"],
        ),
        job(
            "check",
            sh(
                "Install Rust ${{ matrix.toolchain }}",
                "rustup toolchain install ${{ matrix.toolchain }} --component clippy",
            ),
            sh("Install cargo-make", "cargo install cargo-make --locked"),
            sh("Run cargo make check", "cargo make check"),
            sh("Run cargo make clippy-all", "cargo make clippy"),
            matrix=matrix(os=OSES, toolchain=["nightly"]),
            fail_fast=False,
            requires=["cargo", "rustup"],
            inputs=["Cargo.toml", "Cargo.lock"],
            cache_dirs=["target"],
        ),
        job(
            "test",
            sh("Install Rust ${{ matrix.toolchain }}", "rustup toolchain install ${{ matrix.toolchain }}"),
            sh("Install cargo-make", "cargo install cargo-make --locked"),
            sh("Install cargo-nextest", "cargo install cargo-nextest --locked"),
            sh("Test docs", "cargo make test", env={"RUST_BACKTRACE": "full"}),
            matrix=matrix(os=OSES, toolchain=["nightly"]),
            fail_fast=False,
            requires=["cargo", "rustup"],
            inputs=["Cargo.toml", "Cargo.lock"],
            cache_dirs=["target"],
        ),
        on=triggers(
            on_push(branches=["main"], paths_ignore=["**.md"]),
            on_merge_proposal(branches=["main"]),
        ),
    )
