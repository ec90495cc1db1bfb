import argparse
import json
import logging
from dataclasses import replace
from pathlib import Path

try:
    from tqdm import tqdm  # type: ignore
except ModuleNotFoundError:
    tqdm = None  # type: ignore[assignment]

from injury_kit import (
    ModelConfig,
    ModelUnavailable,
    PipelineConfig,
    format_detection_context,
    load_class_names,
    load_model_config,
    load_pipeline,
    load_pipeline_config,
)
from injury_kit.runtime import BACKENDS


def _summary_json(result) -> dict:
    highest = result.summary.highest_confidence
    return {
        "run_id": result.run_id,
        "successful_images": result.successful_images,
        "failed_images": result.failed_images,
        "total_detections": result.total_detections,
        "truncated_images": result.truncated_images,
        "by_class": result.summary.by_class,
        "highest_confidence": None
        if highest is None
        else {
            "class_name": highest.class_name,
            "confidence": highest.confidence,
            "image_index": result.summary.highest_confidence_image_index,
        },
        "images": [
            {
                "source": r.source,
                "success": r.success,
                "error": r.error,
                "error_type": r.error_type,
                "detections": [
                    {
                        "class_id": d.class_id,
                        "class_name": d.class_name,
                        "confidence": round(d.confidence, 4),
                        "xyxy": [round(v, 1) for v in d.as_xyxy()],
                    }
                    for d in r.detections
                ],
                "total_ms": round(r.timing.total_ms, 1),
            }
            for r in result.results
        ],
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Detect injuries in photographs and print a text summary.")
    parser.add_argument("images", nargs="+", help="Image paths (or file:// URIs) to analyze, in order.")
    parser.add_argument("--model", default="Models/injuries.onnx", help="Path to the detector (.onnx).")
    parser.add_argument("--backend", default=None, choices=BACKENDS, help="Force a backend (mock = canned fallback).")
    parser.add_argument("--model-config", default=None, help="JSON file with ModelConfig fields.")
    parser.add_argument("--pipeline-config", default=None, help="JSON file with PipelineConfig fields.")
    parser.add_argument("--metadata", default=None, help="Export metadata.yaml to take class names from.")
    parser.add_argument("--conf", type=float, default=None, help="Confidence threshold override.")
    parser.add_argument("--iou", type=float, default=None, help="IoU threshold override for NMS.")
    parser.add_argument("--timeout", type=float, default=None, help="Per-image timeout in seconds.")
    parser.add_argument("--max-images", type=int, default=None, help="Process at most N images.")
    parser.add_argument("--stop-on-error", action="store_true", help="Stop at the first image that fails.")
    parser.add_argument("--no-annotate", action="store_true", help="Skip drawing annotated images.")
    parser.add_argument("--out-dir", default=None, help="Directory to write annotated images to.")
    parser.add_argument(
        "--onnx-providers",
        default=None,
        help='Comma-separated ORT providers, e.g. "CoreMLExecutionProvider,CPUExecutionProvider".',
    )
    parser.add_argument("--json", action="store_true", help="Print a JSON summary instead of the text context.")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...).")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")

    try:
        model_config = load_model_config(args.model_config) if args.model_config else ModelConfig()
        if args.metadata:
            model_config = replace(model_config, class_names=load_class_names(args.metadata))

        pipeline_config = load_pipeline_config(args.pipeline_config) if args.pipeline_config else PipelineConfig()
        overrides = {}
        if args.timeout is not None:
            overrides["image_timeout_s"] = args.timeout if args.timeout > 0 else None
        if args.max_images is not None:
            overrides["max_images"] = args.max_images
        if args.stop_on_error:
            overrides["continue_on_error"] = False
        if args.no_annotate:
            overrides["skip_visualization"] = True
        if overrides:
            pipeline_config = replace(pipeline_config, **overrides)
    except (ValueError, FileNotFoundError) as e:
        print(f"ERROR: {e}")
        return 2

    onnx_providers = None
    if args.onnx_providers:
        onnx_providers = [p.strip() for p in str(args.onnx_providers).split(",") if p.strip()]

    try:
        pipeline = load_pipeline(
            args.model if args.backend != "mock" else None,
            backend=args.backend,
            model_config=model_config,
            pipeline_config=pipeline_config,
            onnx_providers=onnx_providers,
        )
    except ValueError as e:
        print(f"ERROR: {e}")
        return 2

    pbar = None
    if tqdm is not None and not args.no_progress:
        pbar = tqdm(total=min(len(args.images), pipeline_config.max_images), unit="image", desc="detect")

    def on_progress(event) -> None:
        if pbar is not None and event.stage == "image_complete":
            pbar.update(1)

    try:
        result = pipeline.run(
            args.images,
            confidence_threshold=args.conf,
            iou_threshold=args.iou,
            progress=on_progress,
        )
    except ModelUnavailable as e:
        print(f"ERROR: detection model unavailable: {e}")
        return 2
    finally:
        if pbar is not None:
            pbar.close()
        pipeline.close()

    if args.out_dir:
        out_dir = Path(args.out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        for r in result.results:
            if not r.success or r.annotated_image is None:
                continue
            stem = Path(r.source).stem if not r.source.startswith("<") else f"image_{r.index + 1}"
            out_path = out_dir / f"{r.index + 1:02d}_{stem}_annotated{pipeline_config.annotation_format}"
            out_path.write_bytes(r.annotated_image)
            print(f"Wrote annotated image: {out_path}")

    for r in result.results:
        if not r.success:
            print(f"WARNING: {r.source}: {r.error_type}: {r.error}")

    if args.json:
        print(json.dumps(_summary_json(result), indent=2))
    else:
        print(format_detection_context(result))

    return 0 if result.successful_images > 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
