"""SnapSense CLI.

Usage:
    snapsense validate    Load a config and build every classifier
    snapsense replay      Run a recorded session through the engine
    snapsense wav         Run a WAV clip through the audio detectors
    snapsense benchmark   Measure per-tick latency
    snapsense export      Export mel-CNN weights to ONNX
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

try:
    import typer
except ImportError:
    raise ImportError("typer is required for CLI. Install with: pip install typer")
from typing import Optional

import numpy as np

from snapsense.config import ConfigurationError, EngineConfig

app = typer.Typer(
    name="snapsense",
    help="Snap, click and pinch detection from audio blocks and hand poses.",
    add_completion=False,
)


@app.callback()
def main_options(
    log_level: str = typer.Option("warning", "--log-level", help="debug, info, warning or error"),
):
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def _load_engine(config_path: str):
    from snapsense.pipeline import GestureEngine

    try:
        config = EngineConfig.from_yaml(config_path)
        return GestureEngine(config)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1)
    except ImportError as e:
        typer.echo(f"Missing backend: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def validate(
    config: str = typer.Argument(..., help="Engine config (.yml or .json)"),
):
    """Check a config: parse it and load every classifier."""
    with _load_engine(config) as engine:
        for det in engine.detectors:
            gate = det.gate.config.ratio_mode.value if det.gate else "none"
            typer.echo(
                f"  {det.name:10s} feature={det.config.feature.value:9s} "
                f"classifier={det.classifier.kind.value:8s} block={det.block_size:5d} gate={gate}"
            )
        if engine.pinch is not None:
            typer.echo(f"  {engine.pinch.name:10s} rule: thumb-index < {engine.pinch.threshold} m")
    typer.echo("OK")


@app.command()
def replay(
    config: str = typer.Argument(..., help="Engine config (.yml or .json)"),
    recording: str = typer.Argument(..., help="Session recording (.npz)"),
    speed: float = typer.Option(1.0, help="Playback speed multiplier"),
    realtime: bool = typer.Option(False, help="Play at the recorded cadence"),
    metrics: bool = typer.Option(False, help="Print Prometheus metrics afterwards"),
):
    """Replay a recorded session through the engine."""
    from snapsense.recorder import SessionPlayer

    path = Path(recording)
    if not path.exists():
        typer.echo(f"Recording not found: {recording}", err=True)
        raise typer.Exit(1)

    player = SessionPlayer.load(path)
    typer.echo(f"Replaying {path.name} ({player.tick_count} ticks, {player.duration:.1f}s)")

    with _load_engine(config) as engine:
        engine.on_gesture(lambda e: typer.echo(f"  {e.timestamp:8.3f}s  {e.gesture}"))

        ticks = player.play_realtime(speed=speed) if realtime else player.play()
        for tick in ticks:
            engine.process(tick.timestamp, audio=tick.audio, hand=tick.hand)

        stats = engine.stats
        typer.echo(f"\nReplay complete. {stats.total_events} events "
                   f"({len(player.recorded_events)} in the recording).")
        if metrics:
            typer.echo(engine.metrics.render())


@app.command()
def wav(
    config: str = typer.Argument(..., help="Engine config (.yml or .json)"),
    clip: str = typer.Argument(..., help="16-bit PCM WAV file"),
    hop: Optional[int] = typer.Option(None, help="Samples per tick (default: smallest block size)"),
):
    """Run a WAV clip through the audio detectors."""
    from snapsense.wavio import read_wav

    samples, sample_rate = read_wav(clip)

    with _load_engine(config) as engine:
        if sample_rate != engine.config.sample_rate:
            typer.echo(
                f"Clip is {sample_rate} Hz, config expects {engine.config.sample_rate} Hz",
                err=True,
            )
            raise typer.Exit(1)
        if not engine.detectors:
            typer.echo("No audio detectors configured", err=True)
            raise typer.Exit(1)

        step = hop or min(d.block_size for d in engine.detectors)
        largest = max(d.block_size for d in engine.detectors)
        typer.echo(f"{Path(clip).name}: {samples.size / sample_rate:.2f}s, {step} samples per tick")

        for end in range(largest, samples.size + 1, step):
            for event in engine.process(end / sample_rate, audio=samples[end - largest:end]):
                typer.echo(f"  {event.timestamp:8.3f}s  {event.gesture}")

        typer.echo(f"\n{engine.stats.total_events} events")


def _synthetic_config(block_size: int) -> EngineConfig:
    """Click (spectral/logistic, gated) plus snap (kinematic/RBF) with random models."""
    from snapsense.config import ClassifierSpec, DetectorConfig, FeatureSource
    from snapsense.gate import GateConfig
    from snapsense.kinematics import FEATURE_DIM

    rng = np.random.default_rng(42)
    n_sv = 64
    rbf = {
        "mean": [0.0] * FEATURE_DIM,
        "scale": [1.0] * FEATURE_DIM,
        "svFlat": rng.standard_normal(n_sv * FEATURE_DIM).tolist(),
        "dualCoef": rng.standard_normal(n_sv).tolist(),
        "nSV": n_sv,
        "featDim": FEATURE_DIM,
        "intercept": 0.0,
        "gamma": 0.05,
    }
    logistic = {"mean": [0.0] * 4, "scale": [1.0] * 4, "weight": [1.0, 0.5, 0.01, -1.0], "bias": -1.0}

    return EngineConfig(detectors=[
        DetectorConfig(
            name="click",
            feature=FeatureSource.SPECTRAL,
            classifier=ClassifierSpec("logistic", params=logistic),
            block_size=block_size,
            gate=GateConfig(rms_multiplier=0.0, min_rms=0.0, ratio_mode="log10", ratio_threshold=-10.0),
            threshold=0.8,
            smoothing=0.85,
        ),
        DetectorConfig(
            name="snap",
            feature=FeatureSource.KINEMATIC,
            classifier=ClassifierSpec("rbf", params=rbf),
            block_size=block_size,
        ),
    ])


@app.command()
def benchmark(
    config: Optional[str] = typer.Option(None, help="Engine config (default: synthetic models)"),
    iterations: int = typer.Option(1000, help="Number of ticks"),
    block_size: int = typer.Option(1024, help="Block size of the synthetic detectors"),
):
    """Measure per-tick latency on synthetic audio and hand input."""
    from snapsense.kinematics import HandJoint, HandSample
    from snapsense.pipeline import GestureEngine

    if config:
        engine = _load_engine(config)
    else:
        engine = GestureEngine(_synthetic_config(block_size))

    rng = np.random.default_rng(0)
    longest = max((d.block_size for d in engine.detectors), default=block_size)
    audio = (0.05 * rng.standard_normal((iterations, longest))).astype(np.float32)
    base = rng.random((len(HandJoint), 3)) * 0.1

    typer.echo(f"Running benchmark: {iterations} ticks, detectors: {', '.join(engine.gestures)}")

    times = []
    with engine:
        for i in range(iterations):
            hand = HandSample.from_array(base + 0.002 * rng.standard_normal(base.shape))
            t0 = time.perf_counter()
            engine.process(i / 60.0, audio=audio[i], hand=hand)
            times.append(time.perf_counter() - t0)

        avg_ms = sum(times) / len(times) * 1000
        p95_ms = sorted(times)[int(len(times) * 0.95)] * 1000

        typer.echo("\nResults:")
        typer.echo(f"   Average latency: {avg_ms:.3f} ms")
        typer.echo(f"   P95 latency:     {p95_ms:.3f} ms")
        typer.echo(f"   Over budget:     {engine.stats.over_budget} ticks")

        typer.echo("\nStage breakdown:")
        for name, stats in engine.profiler.summary().items():
            typer.echo(f"   {name:15s} avg={stats['avg_ms']:.3f}ms  p95={stats['p95_ms']:.3f}ms")


@app.command("export")
def export_model(
    weights: str = typer.Argument(..., help="Trained mel-CNN weights (.pt)"),
    meta: str = typer.Option(..., help="CNN metadata (.json: mean, std, n_mels, hop, sr, excerpt_sec)"),
    output: str = typer.Option("mel_cnn", help="Output path (without extension)"),
    opset: int = typer.Option(17, help="ONNX opset version"),
):
    """Export mel-CNN weights to ONNX and check parity with torch."""
    from snapsense.classifier import CNNMeta, MelCNNClassifier
    from snapsense.config import read_structured
    from snapsense.export import ModelExporter

    try:
        cnn_meta = CNNMeta.from_dict(read_structured(meta))
        classifier = MelCNNClassifier(cnn_meta, weights=weights)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1)

    with classifier:
        exporter = ModelExporter(classifier)
        path = exporter.to_onnx(output, opset_version=opset)
        typer.echo(f"ONNX exported: {path} ({path.stat().st_size / 1024:.1f} KB)")

        validation = exporter.validate_onnx(path)
        status = "PASSED" if validation["valid"] else "FAILED"
        typer.echo(f"   Validation: {status} (max diff: {validation['max_difference']:.2e})")
        if not validation["valid"]:
            raise typer.Exit(1)


def main():
    app()


if __name__ == "__main__":
    main()
