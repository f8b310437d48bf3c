#!/usr/bin/env python3
"""
Pipeline Simulation Script
==========================

Standalone script that drives the perception core with synthetic frames
and the mock model runtime.

This script:
    1. Generates textured synthetic frames, switching scene periodically
    2. Runs the pipeline tick loop for a configurable duration
    3. Asks one user question part-way through
    4. Prints every final spoken alert and a status summary

Usage:
    python scripts/simulate.py --duration 20
    python scripts/simulate.py --duration 30 --question-at 10 --scene-every 6
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import time

import cv2
import numpy as np

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from sightline.config import Settings, load_config, setup_logging
from sightline.pipeline import PerceptionPipeline
from sightline.session import MockModelRuntime

logger = logging.getLogger(__name__)


def make_scene(seed: int, size: int = 240) -> np.ndarray:
    """Random block texture; one seed is one 'scene'."""
    rng = np.random.default_rng(seed)
    blocks = rng.integers(40, 230, size=(8, 8, 3), dtype=np.uint8)
    return cv2.resize(blocks, (size, size), interpolation=cv2.INTER_NEAREST)


def jitter(scene: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Small sensor noise so consecutive frames are not exact repeats."""
    noise = rng.integers(-3, 4, size=scene.shape)
    return np.clip(scene.astype(np.int16) + noise, 0, 255).astype(np.uint8)


async def feed_frames(
    pipeline: PerceptionPipeline,
    duration: float,
    fps: float,
    scene_every: float,
) -> None:
    rng = np.random.default_rng(7)
    start = time.monotonic()
    while (elapsed := time.monotonic() - start) < duration:
        scene = make_scene(int(elapsed // scene_every))
        pipeline.offer_frame(jitter(scene, rng))
        await asyncio.sleep(1.0 / fps)


async def print_alerts(pipeline: PerceptionPipeline) -> None:
    async for text, is_final in pipeline.speech_output():
        if is_final:
            print(f">>> {text}")


async def run_simulation(
    settings: Settings,
    duration: float,
    fps: float,
    scene_every: float,
    question_at: float,
    question: str,
    chunk_delay: float,
) -> dict:
    settings.admission.min_frame_interval_seconds = 1.0 / fps
    runtime = MockModelRuntime(
        max_tokens=settings.session.max_tokens,
        tokens_per_inference=settings.session.tokens_per_inference,
        chunk_delay=chunk_delay,
    )
    pipeline = PerceptionPipeline(settings, runtime)

    if not await pipeline.start():
        logger.error("Pipeline failed to start")
        return pipeline.status()

    run_task = asyncio.create_task(pipeline.run())
    alerts_task = asyncio.create_task(print_alerts(pipeline))
    feeder = asyncio.create_task(feed_frames(pipeline, duration, fps, scene_every))

    if 0 < question_at < duration:
        await asyncio.sleep(question_at)
        pipeline.tap()
        outcome = pipeline.ask(question)
        logger.info(f"Asked {question!r}: {outcome.value}")

    await feeder
    await pipeline.stop()
    await run_task
    alerts_task.cancel()
    await asyncio.gather(alerts_task, return_exceptions=True)

    return pipeline.status()


def main() -> None:
    parser = argparse.ArgumentParser(description="Simulate the perception pipeline")
    parser.add_argument("--duration", type=float, default=20.0, help="Seconds to run")
    parser.add_argument("--fps", type=float, default=4.0, help="Accepted frames per second")
    parser.add_argument("--scene-every", type=float, default=5.0, help="Seconds per scene")
    parser.add_argument("--question-at", type=float, default=8.0, help="Ask at this second (0 = never)")
    parser.add_argument("--question", default="what is in front of me", help="Question text")
    parser.add_argument("--chunk-delay", type=float, default=0.1, help="Mock seconds per word")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    args = parser.parse_args()

    settings = load_config(args.config)
    setup_logging(settings)

    status = asyncio.run(
        run_simulation(
            settings,
            duration=args.duration,
            fps=args.fps,
            scene_every=args.scene_every,
            question_at=args.question_at,
            question=args.question,
            chunk_delay=args.chunk_delay,
        )
    )

    print("=" * 60)
    print(json.dumps(status, indent=2))


if __name__ == "__main__":
    main()
