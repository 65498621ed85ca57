import argparse
import queue
import sys
import threading
import time
from typing import Callable, Dict, List, Optional

from kinect_cloud.core.config_loader import DeviceConfig, load_config
from kinect_cloud.core.errors import DeviceError
from kinect_cloud.core.interfaces import IFrameSource, IPresenter
from kinect_cloud.core.log import get_logger, setup_logging
from kinect_cloud.core.types import FrameResult
from kinect_cloud.io.kinect_camera import KinectCamera
from kinect_cloud.logic.pipeline import FramePipeline, SessionOutcome, TimeoutPolicy
from kinect_cloud.vis.presenter import OpenCVPresenter, QueuePresenter

log = get_logger("main")

# Results buffered per device for the GUI thread; older ones are dropped
FRAME_QUEUE_SIZE = 2
IDLE_POLL_S = 0.005


def _default_source(index: int, config: dict) -> IFrameSource:
    return KinectCamera(index, DeviceConfig.from_dict(config.get("device", {})))


def _default_presenter(config: dict) -> IPresenter:
    disp = config.get("display", {})
    return OpenCVPresenter(
        depth_max_mm=float(disp.get("depth_max_mm", 5000)),
        wait_key_ms=int(disp.get("wait_key_ms", 30)),
        enable_point_cloud=bool(disp.get("point_cloud", True)),
    )


def run_device(index: int, config: dict, stop_event: Optional[threading.Event] = None,
               source_factory: Callable[[int, dict], IFrameSource] = _default_source,
               presenter_factory: Callable[[dict], IPresenter] = _default_presenter) -> Optional[SessionOutcome]:
    """Opens one device session and runs its loop. Returns None if startup failed."""
    cap_cfg = config.get("capture", {})
    source = source_factory(index, config)
    presenter = presenter_factory(config)
    try:
        pipeline = FramePipeline.open(
            source,
            presenter,
            timeout_ms=int(cap_cfg.get("timeout_ms", 1000)),
            timeout_policy=TimeoutPolicy(int(cap_cfg.get("max_consecutive_timeouts", 1))),
        )
    except DeviceError as e:
        log.error(f"[kinect {index}] startup failed: {e}")
        presenter.close()
        return None
    return pipeline.run(stop_event)


def _present(presenter: IPresenter, queues: Dict[int, "queue.Queue[FrameResult]"], stop_event: threading.Event) -> bool:
    """Shows queued results on the calling thread. Returns whether anything was shown."""
    shown = False
    for frames in queues.values():
        while True:
            try:
                result = frames.get_nowait()
            except queue.Empty:
                break
            presenter.show(result)
            shown = True
    if presenter.should_stop() and not stop_event.is_set():
        log.info("Stop requested from the viewer, stopping all sessions...")
        stop_event.set()
    return shown


def run_sessions(indices: List[int], config: dict, stop_event: Optional[threading.Event] = None,
                 source_factory: Callable[[int, dict], IFrameSource] = _default_source,
                 presenter_factory: Callable[[dict], IPresenter] = _default_presenter) -> Dict[int, Optional[SessionOutcome]]:
    """
    One independent capture loop per device. A single device runs entirely on the
    calling thread. With several devices each loop gets a worker thread and the
    calling thread owns the one presenter (HighGUI and GLFW windows are not
    thread-safe), fed through per-device queues.
    """
    stop_event = stop_event or threading.Event()
    if len(indices) == 1:
        idx = indices[0]
        try:
            return {idx: run_device(idx, config, stop_event, source_factory, presenter_factory)}
        except KeyboardInterrupt:
            log.info("Interrupted, session stopped")
            return {idx: SessionOutcome.STOPPED}

    presenter = presenter_factory(config)
    queues = {i: queue.Queue(maxsize=FRAME_QUEUE_SIZE) for i in indices}
    outcomes: Dict[int, Optional[SessionOutcome]] = {}

    def worker(idx):
        outcomes[idx] = run_device(idx, config, stop_event, source_factory,
                                   lambda cfg: QueuePresenter(queues[idx]))

    threads = [threading.Thread(target=worker, args=(i,), name=f"kinect-{i}", daemon=True) for i in indices]
    for t in threads:
        t.start()
    try:
        while any(t.is_alive() for t in threads):
            if not _present(presenter, queues, stop_event):
                time.sleep(IDLE_POLL_S)
        # last frames of sessions that ended between polls
        _present(presenter, queues, stop_event)
    except KeyboardInterrupt:
        log.info("Interrupted, stopping all sessions...")
        stop_event.set()
        for t in threads:
            t.join()
    finally:
        presenter.close()
    return outcomes


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Azure Kinect color / aligned depth / point cloud viewer")
    parser.add_argument("--device", type=int, action="append", help="Device index, repeat for several devices (default: 0)")
    parser.add_argument("--config", default="kinect_cloud.json", help="JSON config file")
    parser.add_argument("--timeout-ms", type=int, help="Capture wait timeout in ms (negative waits forever)")
    parser.add_argument("--max-timeouts", type=int, help="Consecutive capture timeouts before a session ends")
    parser.add_argument("--no-point-cloud", action="store_true", help="Do not open the 3-D view")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    if args.timeout_ms is not None:
        config["capture"]["timeout_ms"] = args.timeout_ms
    if args.max_timeouts is not None:
        config["capture"]["max_consecutive_timeouts"] = args.max_timeouts
    if args.no_point_cloud:
        config["display"]["point_cloud"] = False
    setup_logging(args.log_level or config.get("logging", {}).get("level", "INFO"))

    indices = args.device or [0]
    log.info(f"Starting {len(indices)} session(s): {indices}. Press 'q' to quit.")
    try:
        outcomes = run_sessions(indices, config)
    except KeyboardInterrupt:
        log.info("Interrupted")
        return 130
    failed = [i for i, o in outcomes.items() if o is None or o == SessionOutcome.FAILED]
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
