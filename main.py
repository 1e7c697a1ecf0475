"""Timelapse stabilizer: align a directory of landscape frames to a reference."""

import argparse
import logging
import os
import sys
import threading

import cv2

import config
from alignment.errors import AlignmentInputError, StabilizationCancelled
from alignment.landmarks import FeatureDetectorType
from pipeline.feature_detect import FeatureDetector
from pipeline.image_transform import OpenCVTransformer
from pipeline.landscape_stabilizer import LandscapeStabilizer
from pipeline.progress import StabilizationProgress, ThreadedProgressSink
from pipeline.serialization import dumps, landmarks_to_dict, result_to_dict
from pipeline.settings import LandscapeAlignmentSettings, StabilizationMode

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff")


def parse_args():
    parser = argparse.ArgumentParser(description="Timelapse frame stabilizer")
    parser.add_argument("--reference", required=True,
                        help="Reference frame every other frame is aligned to")
    parser.add_argument("--frames", required=True,
                        help="Directory of frames to stabilize")
    parser.add_argument("--output", required=True,
                        help="Directory for aligned frames and JSON sidecars")
    parser.add_argument("--mode", choices=[m.value for m in StabilizationMode],
                        default=StabilizationMode.FAST.value,
                        help="fast: single pass, slow: multi-pass refinement")
    parser.add_argument("--detector", choices=[d.value.lower() for d in FeatureDetectorType],
                        default=config.LANDSCAPE_DETECTOR.lower(),
                        help="Feature detector")
    parser.add_argument("--max-keypoints", type=int, default=config.MAX_KEYPOINTS)
    parser.add_argument("--save-landmarks", action="store_true",
                        help="Include keypoints in the JSON sidecar")
    parser.add_argument("--debug", action="store_true",
                        help="Verbose logging")
    return parser.parse_args()


def list_frames(directory: str) -> list[str]:
    return sorted(
        os.path.join(directory, name) for name in os.listdir(directory)
        if name.lower().endswith(IMAGE_EXTENSIONS)
    )


def log_progress(progress: StabilizationProgress):
    logging.getLogger("progress").debug(
        f"{progress.message} [{progress.progress_percent:.0f}%]"
    )


def main():
    args = parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else config.LOG_LEVEL,
        format=config.LOG_FORMAT,
        datefmt=config.LOG_DATEFMT,
    )
    logger = logging.getLogger("main")

    settings = LandscapeAlignmentSettings(
        detector_type=FeatureDetectorType.from_string(args.detector),
        max_keypoints=args.max_keypoints,
    ).with_mode(StabilizationMode(args.mode))

    reference_image = cv2.imread(args.reference)
    if reference_image is None:
        logger.error(f"Cannot read reference frame {args.reference}")
        return 1

    detector = FeatureDetector(settings.detector_type, settings.max_keypoints)
    reference = detector.detect(reference_image)
    if reference is None or not reference.has_enough_keypoints():
        logger.error("Reference frame has too few keypoints to align against")
        return 1
    logger.info(f"Reference: {reference.keypoint_count} keypoints, "
                f"quality {reference.quality_score:.2f}")

    os.makedirs(args.output, exist_ok=True)
    frames = list_frames(args.frames)
    logger.info(f"Stabilizing {len(frames)} frames in {args.mode} mode")

    cancel = threading.Event()
    reference_id = os.path.basename(args.reference)
    succeeded = 0

    with ThreadedProgressSink(log_progress) as sink:
        stabilizer = LandscapeStabilizer(OpenCVTransformer(), on_progress=sink)
        try:
            for path in frames:
                name = os.path.basename(path)
                image = cv2.imread(path)
                if image is None:
                    logger.warning(f"{name}: unreadable, skipped")
                    continue

                source = detector.detect(image)
                if source is None:
                    logger.warning(f"{name}: no features detected, skipped")
                    continue

                try:
                    result = stabilizer.stabilize(image, source, reference, settings,
                                                  reference_frame_id=reference_id,
                                                  cancel_event=cancel)
                except AlignmentInputError as e:
                    logger.warning(f"{name}: {e}")
                    continue

                stem = os.path.splitext(name)[0]
                cv2.imwrite(os.path.join(args.output, name), result.image)
                record = result_to_dict(result)
                if args.save_landmarks:
                    record["landmarks"] = landmarks_to_dict(source)
                with open(os.path.join(args.output, f"{stem}.json"), "w") as f:
                    f.write(dumps(record))

                if result.success:
                    succeeded += 1
                logger.info(f"{name}: confidence {result.confidence:.2f}, "
                            f"{result.passes_executed} passes"
                            f"{'' if result.success else ' (low confidence)'}")
        except KeyboardInterrupt:
            cancel.set()
            logger.info("Interrupted")
        except StabilizationCancelled:
            logger.info("Cancelled")

    logger.info(f"{succeeded}/{len(frames)} frames aligned with confidence")
    return 0 if succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
