import argparse
import sys
import time
from typing import Optional

import numpy as np

from kinect_cloud.core.config_loader import DeviceConfig, load_config
from kinect_cloud.core.errors import CaptureError, DeviceError
from kinect_cloud.core.log import get_logger, setup_logging
from kinect_cloud.io.kinect_camera import KinectCamera
from kinect_cloud.logic.pipeline import FramePipeline
from kinect_cloud.vis.presenter import NullPresenter

log = get_logger("validate")


def _exit(code: int, msg: Optional[str] = None):
    if msg:
        if code == 0:
            log.info(msg)
        else:
            log.error(msg)
    sys.exit(code)


def check(source, n: int = 10, timeout_ms: int = 1000) -> dict:
    """
    Grabs `n` captures from an already-opened source and runs the pipeline
    stages on each. Returns counters, estimated FPS and valid depth coverage.
    """
    pipeline = FramePipeline(source, NullPresenter(), source.calibration, timeout_ms=timeout_ms)
    stats = {"captures": 0, "color": 0, "depth": 0, "aligned": 0, "point_cloud": 0, "coverage": 0.0, "fps": 0.0}
    coverages = []
    t0 = None
    t_last = None
    for _ in range(n):
        capture = source.next_capture(timeout_ms)
        try:
            color = source.extract_color(capture)
            depth = source.extract_depth(capture)
        finally:
            source.release(capture)
        stats["captures"] += 1
        t = time.time()
        if t0 is None:
            t0 = t
        t_last = t

        result = pipeline.process(color, depth, capture.frame_id, capture.timestamp)
        stats["color"] += color is not None
        stats["depth"] += depth is not None
        stats["aligned"] += result.aligned_depth is not None
        stats["point_cloud"] += result.point_cloud is not None
        if result.aligned_depth is not None:
            coverages.append(float(np.count_nonzero(result.aligned_depth.data)) / result.aligned_depth.data.size)

    elapsed = (t_last - t0) if (t_last and t0) else 0.0
    stats["fps"] = (n - 1) / elapsed if elapsed > 0 else 0.0
    stats["coverage"] = float(np.mean(coverages)) if coverages else 0.0
    return stats


def main(argv=None):
    parser = argparse.ArgumentParser(description="Azure Kinect capture/alignment health check")
    parser.add_argument("--device", type=int, default=0)
    parser.add_argument("--frames", type=int, default=10)
    parser.add_argument("--config", default="kinect_cloud.json")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(config.get("logging", {}).get("level", "INFO"))
    dev_cfg = DeviceConfig.from_dict(config.get("device", {}))
    timeout_ms = int(config.get("capture", {}).get("timeout_ms", 1000))

    cam = KinectCamera(args.device, dev_cfg)
    try:
        cam.open()
    except DeviceError as e:
        _exit(2, f"Device startup failed: {e}")

    try:
        stats = check(cam, args.frames, timeout_ms)
    except CaptureError as e:
        cam.close()
        _exit(3, f"Capture failed: {e}")
    cam.close()

    log.info(f"Configuration: {dev_cfg.color_resolution} / {dev_cfg.camera_fps}fps / {dev_cfg.color_format} / {dev_cfg.depth_mode}")
    log.info(f"Captures: {stats['captures']}/{args.frames}, color {stats['color']}, depth {stats['depth']}")
    log.info(f"Aligned: {stats['aligned']}, point clouds: {stats['point_cloud']}")
    log.info(f"Estimated FPS: {stats['fps']:.2f}, valid depth coverage: {stats['coverage'] * 100:.1f}%")

    if stats["point_cloud"] != args.frames:
        _exit(4, "Status: FAILED (frames without point cloud)")
    _exit(0, "Status: OK")


if __name__ == "__main__":
    main()
