import argparse
import json
import os
import sys
import traceback
from typing import Any, Iterator, List

from .analyzer import AnalyzerConfig, ExerciseAnalyzer
from .exercise_analysis.config_utils import list_available_exercises
from .exercise_analysis.validator_config import ConfigError
from .feedback.cooldown import FeedbackCooldown


class ReplayClock:
    """Clock advanced by the replay loop so throttling follows the recording's frame rate."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def read_frames(path: str) -> Iterator[Any]:
    """Yield raw frames from a JSON array file or a JSON-lines file."""
    with open(path, "r") as f:
        if path.endswith(".jsonl"):
            lines = (line.strip() for line in f)
            raw_frames: List[Any] = [json.loads(line) for line in lines if line]
        else:
            data = json.load(f)
            raw_frames = data.get("frames", []) if isinstance(data, dict) else data
    for raw in raw_frames:
        if isinstance(raw, dict) and "landmarks" in raw:
            yield raw["landmarks"]
        else:
            yield raw


def build_overrides(args: argparse.Namespace) -> dict:
    overrides = {}
    if args.model:
        overrides["model"] = {"path": args.model}
    if args.mode:
        overrides["feedback"] = {"mode": args.mode}
    if args.height_cm:
        overrides["calibration"] = {"mode": "height", "user_height_cm": args.height_cm}
    return overrides


def main(argv=None) -> int:
    """Replay a recorded landmark stream through the form analysis engine."""
    parser = argparse.ArgumentParser(description="Exercise Form Analysis Engine - landmark replay")
    parser.add_argument("--exercise", type=str, default="bodyweight_squat", help="Exercise id (see --list)")
    parser.add_argument("--config", type=str, help="Path to an exercise JSON document instead of a shipped one")
    parser.add_argument("--landmarks", type=str, help="Recorded frames (.json array or .jsonl)")
    parser.add_argument("--model", type=str, help="ONNX model path or URL (overrides the exercise document)")
    parser.add_argument("--mode", type=str, choices=["ml_only", "heuristic_only", "hybrid"], help="Fusion mode")
    parser.add_argument("--height_cm", type=float, help="User height for body-scale calibration")
    parser.add_argument("--fps", type=float, default=30.0, help="Frame rate of the recording")
    parser.add_argument("--report", type=str, help="Write the session report JSON here")
    parser.add_argument("--list", action="store_true", help="List shipped exercises and exit")
    args = parser.parse_args(argv)

    if args.list:
        for name in list_available_exercises():
            print(name)
        return 0
    if not args.landmarks or not os.path.isfile(args.landmarks):
        print(f"Landmark file not found: {args.landmarks}")
        return 1
    if args.fps <= 0:
        print("--fps must be positive")
        return 1

    try:
        config = AnalyzerConfig.from_exercise(args.exercise, build_overrides(args), args.config)
    except ConfigError as e:
        print(f"Invalid exercise configuration: {e}")
        return 1

    clock = ReplayClock()
    analyzer = ExerciseAnalyzer(config, clock=clock)
    if not analyzer.initialize():
        print("Initialization failed, see log for details.")
        return 1

    cooldown = FeedbackCooldown(clock=clock)
    frame_count = 0
    try:
        for frame in read_frames(args.landmarks):
            clock.now = frame_count / args.fps
            frame_count += 1
            record = analyzer.analyze_frame(frame)
            message = cooldown.select(record)
            if message:
                print(f"[{clock.now:7.2f}s] {record.combined.verdict:<9} {message}")
    except KeyboardInterrupt:
        print("\n[INFO] KeyboardInterrupt received. Exiting gracefully...")
    except (ValueError, KeyError, IndexError) as e:
        print(f"Malformed landmark data at frame {frame_count}: {e}")
        traceback.print_exc()
        return 1

    metrics = analyzer.get_metrics()
    print(f"Replay complete. Processed {frame_count} frames, analysed {metrics['total_frames']}.")
    print(f"Valid reps: {metrics['valid_reps']}  accuracy: {metrics['accuracy']:.1f}  "
          f"form quality: {metrics['form_quality_score']:.1f}")
    if args.report:
        with open(args.report, "w") as f:
            json.dump(analyzer.export_report(), f, indent=2, default=str)
        print(f"Report written to {args.report}")
    analyzer.destroy()
    return 0


if __name__ == "__main__":
    sys.exit(main())
