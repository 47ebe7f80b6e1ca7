import argparse
import time

import numpy as np

from lingualive.devices import SoundDeviceAccess
from lingualive.errors import LiveSessionError
from lingualive.models import AudioChunk
from lingualive.playback import PlaybackScheduler
from lingualive.volume import VolumeMeter


def _tone(freq: float, seconds: float, rate: int, amplitude: float) -> np.ndarray:
    t = np.arange(int(seconds * rate), dtype=np.float32) / rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--device", help="Output device name substring.")
    parser.add_argument("--rate", type=int, default=24000, help="Sample rate.")
    parser.add_argument("--chunks", type=int, default=8, help="Chunks to enqueue.")
    parser.add_argument("--chunk-seconds", type=float, default=0.25, help="Chunk length.")
    parser.add_argument(
        "--barge-in", type=float, default=None, help="Cancel playback after N seconds."
    )
    args = parser.parse_args()

    try:
        graph = SoundDeviceAccess(output_device_name=args.device).open_output_graph(args.rate)
    except LiveSessionError as exc:
        print(f"Output unavailable ({exc.kind.value}): {exc}")
        return 1

    transitions = []
    scheduler = PlaybackScheduler(graph, on_speaking_changed=transitions.append)
    meter = VolumeMeter(graph.analyser_samples)
    print(f"Output rate: {graph.sample_rate_hz} Hz")

    # Alternating pitches make gaps between chunks audible.
    for index in range(args.chunks):
        freq = 440.0 if index % 2 == 0 else 660.0
        samples = _tone(freq, args.chunk_seconds, args.rate, 0.3)
        scheduler.enqueue(AudioChunk(samples, args.rate, samples.size / args.rate))
    print(f"Scheduled until t={scheduler.next_start_time:.3f}s")

    started = time.time()
    try:
        while scheduler.is_speaking:
            elapsed = time.time() - started
            if args.barge_in is not None and elapsed >= args.barge_in:
                print(f"Barge-in: cancelled {scheduler.cancel_all()} chunks")
                break
            print(
                f"t={graph.current_time():.3f}s level={meter.sample():.3f} "
                f"active={len(scheduler.active_handles)}"
            )
            time.sleep(0.1)
    finally:
        scheduler.close()
        graph.close()

    print(f"Played {scheduler.chunks_played} chunks; speaking transitions {transitions}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
