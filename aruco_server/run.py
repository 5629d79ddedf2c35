import argparse
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from marker_pipeline.services.publisher import MqttPublisher
from marker_pipeline.services.storage import SessionStorage

from .config import BUSY_POLICIES, ServerConfig, load_config
from .errors import CalibrationError, ServerBusy, ServerNotRunning
from .logging_utils import add_file_handler, setup_logger
from .output import CsvOutput, OutputSink, PublisherOutput
from .server import DetectionTaskServer
from .visualize import AnnotatedFrameHook

# how often the image loop checks for a stop request while a task runs
WAIT_SLICE_S = 0.2


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Localize a robot's ArUco marker in image files")
    ap.add_argument("images", nargs="+", help="Image files to localize, processed in order")
    ap.add_argument("--config", help="Path to JSON/YAML config")

    ap.add_argument("--server-name")
    ap.add_argument("--marker-id", type=int)
    ap.add_argument("--dict")
    ap.add_argument("--corner-refinement", choices=["none", "subpix", "contour"])
    ap.add_argument("--calib")
    ap.add_argument("--scale", type=float, help="Metres per pixel")
    ap.add_argument("--origin-x", type=float)
    ap.add_argument("--origin-y", type=float)
    ap.add_argument("--heading-offset", type=float, help="Radians")
    ap.add_argument("--policy", choices=list(BUSY_POLICIES))
    ap.add_argument("--out")
    ap.add_argument("--show", action="store_true", help="Display annotated frames")
    ap.add_argument("--no-save-annotated", action="store_true")
    ap.add_argument("--log-level")

    # Optional MQTT mirror of the results
    ap.add_argument(
        "--publish",
        action="store_true",
        help="Enable MQTT publishing (or set env PUBLISH=1).",
    )
    ap.add_argument("--broker-ip", default="127.0.0.1")
    ap.add_argument("--broker-port", type=int, default=1883)
    ap.add_argument("--topic", default="localization/pose")

    return ap


def _apply_args(cfg: ServerConfig, args: argparse.Namespace) -> ServerConfig:
    cfg.apply_overrides(
        server_name=args.server_name,
        robot_marker_id=args.marker_id,
        aruco_dict=args.dict,
        corner_refinement=args.corner_refinement,
        calibration_path=args.calib,
        pixel_to_metric_scale=args.scale,
        origin_x=args.origin_x,
        origin_y=args.origin_y,
        heading_offset=args.heading_offset,
        busy_policy=args.policy,
        session_root=args.out,
        show_annotated=True if args.show else None,
        save_annotated=False if args.no_save_annotated else None,
        log_level=args.log_level.upper() if args.log_level else None,
    )
    return cfg.validate()


def _localize_all(
    server: DetectionTaskServer,
    images: list[str],
    outputs: list[OutputSink],
    logger: logging.Logger,
    stop_event: Optional[threading.Event] = None,
) -> int:
    stop_event = stop_event or threading.Event()
    failures = 0
    for img in images:
        if stop_event.is_set():
            logger.warning("stop requested, %s and later images not processed", img)
            break
        try:
            handle = server.submit(img)
        except ServerNotRunning:
            logger.warning("server stopped, %s and later images not processed", img)
            break
        except ServerBusy as e:
            logger.warning("skipping %s: %s", img, e)
            failures += 1
            continue

        status = server.wait(handle, timeout=WAIT_SLICE_S)
        while not status.terminal:
            if stop_event.is_set():
                server.cancel(handle)
            status = server.wait(handle, timeout=WAIT_SLICE_S)

        ts_unix = time.time()
        for out in outputs:
            try:
                out.write_result(ts_unix, status, img)
            except Exception as e:
                logger.warning("Result output failed: %s", e)
        if status.error is not None:
            failures += 1
        print(f"{img}: {status.state.value}" + (f" {status.pose}" if status.pose else ""))
    return failures


def main(argv: Optional[list[str]] = None) -> int:
    ap = _build_parser()
    args = ap.parse_args(argv)

    cfg = load_config(args.config) if args.config else ServerConfig()
    cfg = _apply_args(cfg, args)

    logger = setup_logger(cfg.server_name, cfg.log_level)

    storage = SessionStorage(cfg.session_root, name=f"{cfg.server_name}_session")
    session_path = storage.begin()
    storage.write_manifest(cfg.as_dict())
    add_file_handler(logger, cfg.server_name, str(Path(storage.logs_dir) / "session.log"))
    logger.info("session started: %s", session_path)

    server = DetectionTaskServer(cfg, logger=logger)
    try:
        server.start()
    except CalibrationError as e:
        logger.error("Startup failed: %s", e)
        return 2

    if cfg.save_annotated or cfg.show_annotated:
        server.add_completion_hook(
            AnnotatedFrameHook(
                server.reference,
                storage=storage if cfg.save_annotated else None,
                show=cfg.show_annotated,
                logger=logger,
            )
        )

    outputs: list[OutputSink] = [CsvOutput()]
    if args.publish or os.getenv("PUBLISH") == "1":
        logger.info("Publishing ENABLED (broker=%s)", args.broker_ip)
        outputs.append(PublisherOutput(MqttPublisher(args.broker_ip, args.topic, args.broker_port)))
    for out in outputs:
        out.open(Path(storage.session_dir))

    stop_event = threading.Event()

    def _handle_signal(_sig, _frame):
        # the image loop cancels the in-flight task and stops submitting
        stop_event.set()

    previous = {signal.SIGINT: signal.signal(signal.SIGINT, _handle_signal)}
    if hasattr(signal, "SIGTERM"):
        previous[signal.SIGTERM] = signal.signal(signal.SIGTERM, _handle_signal)

    try:
        failures = _localize_all(server, args.images, outputs, logger, stop_event)
    finally:
        server.stop()
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        for out in outputs:
            try:
                out.close()
            except Exception:
                pass

    logger.info("summary images=%d failures=%d", len(args.images), failures)
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
