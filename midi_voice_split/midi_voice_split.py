#!/usr/bin/env python
"""Split a multi-track MIDI file into per-voice and per-drum files.

Stage 1: MIDI parsing, track scan and global meta (tempo/time sig/key sig).
Stage 2: Rebuild note spans per track and pack them into monophonic voices
         (channel 10 tracks go to drums/cymbals buckets instead).
Stage 3: Write every voice/bucket as its own single-track MIDI file.
"""

import sys
import os
import argparse
import logging
import subprocess
from collections import defaultdict
from itertools import groupby

import mido
from mido.midifiles.meta import build_meta_message, decode_variable_int

DRUM_CHANNEL = 9  # GM channel 10, zero-indexed
NOTE_OFF_VELOCITY = 0x40
DEFAULT_INSTRUMENT = "Instrument"
LOG_FILENAME = "MIDI_Voice_Separation_Log.txt"
SPLIT_DIR_SUFFIX = " - Split chords"

STATUS_NOTE_OFF = 0x80
STATUS_NOTE_ON = 0x90
STATUS_CONTROL_CHANGE = 0xB0
STATUS_PROGRAM_CHANGE = 0xC0
STATUS_CHANNEL_PRESSURE = 0xD0
STATUS_PITCH_BEND = 0xE0
AUTOMATION_STATUSES = (
    STATUS_CONTROL_CHANGE,
    STATUS_PROGRAM_CHANGE,
    STATUS_CHANNEL_PRESSURE,
    STATUS_PITCH_BEND,
)

META_TRACK_NAME = 0x03
META_END_OF_TRACK = 0x2F
META_TEMPO = 0x51
META_TIME_SIGNATURE = 0x58
META_KEY_SIGNATURE = 0x59
GLOBAL_META_TYPES = (META_TEMPO, META_TIME_SIGNATURE, META_KEY_SIGNATURE)
END_OF_TRACK = bytes([0xFF, META_END_OF_TRACK, 0x00])

# Hi-hats, crash, ride, china, splash (GM percussion map)
CYMBAL_NOTES = frozenset({42, 44, 46, 49, 51, 52, 53, 55, 57, 59})

GM_NAMES = (
    "Acoustic Grand Piano", "Bright Acoustic Piano", "Electric Grand Piano", "Honky-tonk Piano",
    "Electric Piano 1", "Electric Piano 2", "Harpsichord", "Clavinet",
    "Celesta", "Glockenspiel", "Music Box", "Vibraphone",
    "Marimba", "Xylophone", "Tubular Bells", "Dulcimer",
    "Drawbar Organ", "Percussive Organ", "Rock Organ", "Church Organ",
    "Reed Organ", "Accordion", "Harmonica", "Tango Accordion",
    "Acoustic Guitar (nylon)", "Acoustic Guitar (steel)", "Electric Guitar (jazz)", "Electric Guitar (clean)",
    "Electric Guitar (muted)", "Overdriven Guitar", "Distortion Guitar", "Guitar harmonics",
    "Acoustic Bass", "Electric Bass (finger)", "Electric Bass (pick)", "Fretless Bass",
    "Slap Bass 1", "Slap Bass 2", "Synth Bass 1", "Synth Bass 2",
    "Violin", "Viola", "Cello", "Contrabass",
    "Tremolo Strings", "Pizzicato Strings", "Orchestral Harp", "Timpani",
    "String Ensemble 1", "String Ensemble 2", "SynthStrings 1", "SynthStrings 2",
    "Choir Aahs", "Voice Oohs", "Synth Voice", "Orchestra Hit",
    "Trumpet", "Trombone", "Tuba", "Muted Trumpet",
    "French Horn", "Brass Section", "SynthBrass 1", "SynthBrass 2",
    "Soprano Sax", "Alto Sax", "Tenor Sax", "Baritone Sax",
    "Oboe", "English Horn", "Bassoon", "Clarinet",
    "Piccolo", "Flute", "Recorder", "Pan Flute",
    "Blown Bottle", "Shakuhachi", "Whistle", "Ocarina",
    "Lead 1 (square)", "Lead 2 (sawtooth)", "Lead 3 (calliope)", "Lead 4 (chiff)",
    "Lead 5 (charang)", "Lead 6 (voice)", "Lead 7 (fifths)", "Lead 8 (bass + lead)",
    "Pad 1 (new age)", "Pad 2 (warm)", "Pad 3 (polysynth)", "Pad 4 (choir)",
    "Pad 5 (bowed)", "Pad 6 (metallic)", "Pad 7 (halo)", "Pad 8 (sweep)",
    "FX 1 (rain)", "FX 2 (soundtrack)", "FX 3 (crystal)", "FX 4 (atmosphere)",
    "FX 5 (brightness)", "FX 6 (goblins)", "FX 7 (echoes)", "FX 8 (sci-fi)",
    "Sitar", "Banjo", "Shamisen", "Koto",
    "Kalimba", "Bag pipe", "Fiddle", "Shanai",
    "Tinkle Bell", "Agogo", "Steel Drums", "Woodblock",
    "Taiko Drum", "Melodic Tom", "Synth Drum", "Reverse Cymbal",
    "Guitar Fret Noise", "Breath Noise", "Seashore", "Bird Tweet",
    "Telephone Ring", "Helicopter", "Applause", "Gunshot",
)

log = logging.getLogger("midi_voice_split")


# ---------------------------------------------------------------------------
# Event classification (raw bytes in, no side effects)
# ---------------------------------------------------------------------------


def _is_meta(data: bytes) -> bool:
    return len(data) >= 2 and data[0] == 0xFF


def _meta_type(data: bytes) -> int | None:
    return data[1] if _is_meta(data) else None


def _meta_payload(data: bytes) -> bytes:
    end = 2
    while end < len(data) and data[end] & 0x80:
        end += 1
    length = decode_variable_int(list(data[2:end + 1]))
    return data[end + 1:end + 1 + length]


def _is_channel_message(data: bytes) -> bool:
    return len(data) > 0 and 0x80 <= data[0] <= 0xEF


def _note_on(data: bytes) -> tuple[int, int, int] | None:
    """Return (channel, pitch, velocity) for a sounding note-on."""
    if len(data) < 3 or (data[0] & 0xF0) != STATUS_NOTE_ON or data[2] == 0:
        return None
    return data[0] & 0x0F, data[1], data[2]


def _note_off(data: bytes) -> tuple[int, int] | None:
    """Return (channel, pitch) for a note-off, including note-on velocity 0."""
    if len(data) < 3:
        return None
    status = data[0] & 0xF0
    if status == STATUS_NOTE_OFF or (status == STATUS_NOTE_ON and data[2] == 0):
        return data[0] & 0x0F, data[1]
    return None


def _program_change(data: bytes) -> tuple[int, int] | None:
    if len(data) < 2 or (data[0] & 0xF0) != STATUS_PROGRAM_CHANGE:
        return None
    return data[0] & 0x0F, data[1]


# ---------------------------------------------------------------------------
# mido <-> raw events
# ---------------------------------------------------------------------------


def _message_bytes(msg: mido.Message | mido.MetaMessage) -> bytes:
    return bytes(msg.bytes())


def _bytes_to_message(data: bytes, time: int = 0) -> mido.Message | mido.MetaMessage:
    if _is_meta(data):
        return build_meta_message(data[1], list(_meta_payload(data)), delta=time)
    return mido.Message.from_bytes(list(data), time=time)


def track_events(track: mido.MidiTrack) -> list[tuple[int, bytes]]:
    """Flatten a track into (absolute_tick, raw_bytes) pairs."""
    events: list[tuple[int, bytes]] = []
    tick = 0
    for msg in track:
        tick += msg.time
        events.append((tick, _message_bytes(msg)))
    return events


# ---------------------------------------------------------------------------
# Track scan
# ---------------------------------------------------------------------------


def scan_track_info(all_events: list[list[tuple[int, bytes]]]) -> list[dict]:
    infos: list[dict] = []
    for index, events in enumerate(all_events):
        name = ""
        has_drum_channel = False
        last_program: dict[int, int] = {}
        note_counts: dict[int, int] = defaultdict(int)

        for _, data in events:
            if not name and _meta_type(data) == META_TRACK_NAME:
                name = _meta_payload(data).decode("latin-1")
            if _is_channel_message(data):
                if (data[0] & 0x0F) == DRUM_CHANNEL:
                    has_drum_channel = True
                program = _program_change(data)
                if program is not None:
                    last_program[program[0]] = program[1]
            on = _note_on(data)
            if on is not None:
                note_counts[on[0]] += 1

        program_guess = None
        if note_counts:
            # Lowest channel wins a tie.
            busiest = max(sorted(note_counts), key=lambda ch: note_counts[ch])
            program_guess = last_program.get(busiest)

        infos.append(
            {
                "index": index,
                "event_count": len(events),
                "name": name,
                "has_drum_channel": has_drum_channel,
                "program_guess": program_guess,
            }
        )
    return infos


def instrument_label(info: dict) -> str:
    if info["has_drum_channel"]:
        return "Percussion (Ch10)"
    if info["program_guess"] is None:
        return "Unknown"
    return GM_NAMES[info["program_guess"]]


def sanitize_filename(name: str) -> str:
    out = "".join(c if (c.isascii() and c.isalnum()) or c in "-_ " else "_" for c in name)
    return out.strip(" _") or DEFAULT_INSTRUMENT


# ---------------------------------------------------------------------------
# Notes, voices and drums
# ---------------------------------------------------------------------------


def extract_note_spans(events: list[tuple[int, bytes]]) -> list[dict]:
    """Pair note-on/note-off events into spans.

    Pending note-ons are kept on a stack per (channel, pitch): a note-off
    closes the most recent one (LIFO), so a re-triggered pitch releases in
    reverse order. Spans are at least one tick long. Note-ons still pending
    at the end of the track are dropped.

    Result is sorted by start tick, then pitch descending.
    """
    pending: dict[tuple[int, int], list[tuple[int, int]]] = defaultdict(list)
    spans: list[dict] = []

    for tick, data in events:
        on = _note_on(data)
        if on is not None:
            channel, note, velocity = on
            pending[(channel, note)].append((tick, velocity))
            continue
        off = _note_off(data)
        if off is None:
            continue
        stack = pending.get(off)
        if not stack:
            continue
        start, velocity = stack.pop()
        spans.append(
            {
                "start": start,
                "end": max(tick, start + 1),
                "note": off[1],
                "velocity": velocity,
                "channel": off[0],
            }
        )

    spans.sort(key=lambda s: (s["start"], -s["note"]))
    return spans


def _note_on_channels(events: list[tuple[int, bytes]]) -> set[int]:
    channels = set()
    for _, data in events:
        on = _note_on(data)
        if on is not None:
            channels.add(on[0])
    return channels


def _mean_pitch(lane: list[dict]) -> float:
    if not lane:
        return float("-inf")
    return sum(s["note"] for s in lane) / len(lane)


def assign_voices(spans: list[dict]) -> list[list[dict]]:
    """Greedy lane packing of note spans into monophonic voices.

    Spans sharing a start tick are placed highest pitch first, each into the
    oldest lane whose last span has ended by that tick, or a new lane when
    none is free. Lanes are then ordered by mean pitch, highest first; lanes
    with equal means keep their creation order.
    """
    lanes: list[list[dict]] = []
    ordered = sorted(spans, key=lambda s: s["start"])
    for start, group in groupby(ordered, key=lambda s: s["start"]):
        free = [i for i, lane in enumerate(lanes) if lane[-1]["end"] <= start]
        for span in sorted(group, key=lambda s: -s["note"]):
            if free:
                lanes[free.pop(0)].append(span)
            else:
                lanes.append([span])

    return sorted(lanes, key=lambda lane: -_mean_pitch(lane))


def split_drums(spans: list[dict]) -> tuple[list[dict], list[dict]]:
    """Partition channel 10 spans into (drums, cymbals) by pitch."""
    drums: list[dict] = []
    cymbals: list[dict] = []
    for span in spans:
        if span["channel"] != DRUM_CHANNEL:
            continue
        if span["note"] in CYMBAL_NOTES:
            cymbals.append(span)
        else:
            drums.append(span)
    return drums, cymbals


# ---------------------------------------------------------------------------
# Meta and automation collection
# ---------------------------------------------------------------------------


def collect_global_meta(all_events: list[list[tuple[int, bytes]]]) -> list[tuple[int, bytes]]:
    metas: list[tuple[int, bytes]] = []
    for events in all_events:
        for tick, data in events:
            if len(data) >= 3 and _meta_type(data) in GLOBAL_META_TYPES:
                metas.append((tick, data))
    metas.sort(key=lambda x: x[0])
    return metas


def collect_automation(events: list[tuple[int, bytes]], channels: set[int]) -> list[tuple[int, bytes]]:
    """CC, program, pressure and pitch bend events on the given channels."""
    out: list[tuple[int, bytes]] = []
    for tick, data in events:
        if not _is_channel_message(data):
            continue
        if (data[0] & 0x0F) not in channels:
            continue
        if (data[0] & 0xF0) in AUTOMATION_STATUSES:
            out.append((tick, data))
    return out


# ---------------------------------------------------------------------------
# Output assembly
# ---------------------------------------------------------------------------


def _span_events(spans: list[dict]) -> list[tuple[int, bytes]]:
    out: list[tuple[int, bytes]] = []
    for span in spans:
        channel = span["channel"] & 0x0F
        note = span["note"] & 0x7F
        out.append((span["start"], bytes([STATUS_NOTE_ON | channel, note, span["velocity"] & 0x7F])))
        out.append((span["end"], bytes([STATUS_NOTE_OFF | channel, note, NOTE_OFF_VELOCITY])))
    return out


def _normalize_track(events: list[tuple[int, bytes]]) -> mido.MidiTrack:
    """Sort absolute events, keep a single end-of-track and convert to deltas."""
    ordered = sorted(events, key=lambda ev: ev[0])
    body = [ev for ev in ordered if _meta_type(ev[1]) != META_END_OF_TRACK]
    eot_ticks = [tick for tick, data in ordered if _meta_type(data) == META_END_OF_TRACK]
    last_tick = body[-1][0] if body else 0
    if eot_ticks:
        eot_tick = max(max(eot_ticks), last_tick)
    else:
        eot_tick = last_tick + 1 if body else 0

    track = mido.MidiTrack()
    prev = 0
    for tick, data in body + [(eot_tick, END_OF_TRACK)]:
        track.append(_bytes_to_message(data, time=tick - prev))
        prev = tick
    return track


def build_output(
    spans: list[dict],
    global_meta: list[tuple[int, bytes]],
    automation: list[tuple[int, bytes]],
    ticks_per_beat: int,
) -> mido.MidiFile:
    events = list(global_meta)
    events.extend(automation)
    events.extend(_span_events(spans))
    last_tick = max((tick for tick, _ in events), default=0)
    events.append((last_tick + 1, END_OF_TRACK))

    mid = mido.MidiFile(type=0, ticks_per_beat=ticks_per_beat)
    mid.tracks.append(_normalize_track(events))
    return mid


def write_output(mid: mido.MidiFile, path: str, label: str) -> bool:
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        log.info("   [%s] track 0 events just before write: %d", label, len(mid.tracks[0]))
        mid.save(path)
    except (OSError, ValueError) as exc:
        log.error("   [%s] ERROR: write failed for %s: %s", label, path, exc)
        return False
    log.info("   [%s] Wrote: %s", label, path)
    return True


def _write_group(
    spans: list[dict],
    label: str,
    path: str,
    global_meta: list[tuple[int, bytes]],
    automation: list[tuple[int, bytes]],
    ticks_per_beat: int,
) -> bool:
    log.info("   [%s] copy global metas: %d", label, len(global_meta))
    log.info("   [%s] inject automation: %d", label, len(automation))
    last_note_tick = max((s["end"] for s in spans), default=0)
    log.info("   [%s] lastNoteTick = %d", label, last_note_tick)
    mid = build_output(spans, global_meta, automation, ticks_per_beat)
    eot_tick = sum(msg.time for msg in mid.tracks[0])
    log.info("   [%s] EOT at %d", label, eot_tick)
    return write_output(mid, path, label)


def split_drum_track(
    events: list[tuple[int, bytes]],
    global_meta: list[tuple[int, bytes]],
    out_dir: str,
    base_name: str,
    ticks_per_beat: int,
) -> tuple[int, int]:
    """Write drums/cymbals files for a channel 10 track. Returns (written, failed)."""
    spans = extract_note_spans(events)
    log.info("  [Drums] notes: %d", len(spans))
    drums, cymbals = split_drums(spans)
    log.info("   -> drums: %d, cymbals: %d", len(drums), len(cymbals))

    automation = collect_automation(events, {DRUM_CHANNEL})
    written = failed = 0
    for label, bucket in (("drums", drums), ("cymbals", cymbals)):
        if not bucket:
            log.info("   Skip %s (no notes)", label)
            continue
        path = os.path.join(out_dir, f"{base_name}-{label}.mid")
        if _write_group(bucket, label, path, global_meta, automation, ticks_per_beat):
            written += 1
        else:
            failed += 1
    return written, failed


def split_voice_track(
    events: list[tuple[int, bytes]],
    spans: list[dict],
    global_meta: list[tuple[int, bytes]],
    out_dir: str,
    base_name: str,
    track_index: int,
    instrument: str,
    ticks_per_beat: int,
) -> tuple[int, int]:
    """Write one file per voice of a melodic track. Returns (written, failed)."""
    channels = _note_on_channels(events)
    log.info("  Notes found: %d | channels used: %d", len(spans), len(channels))

    voices = assign_voices(spans)
    log.info("  Voices: %d", len(voices))
    if not voices:
        log.info("  No voices (skip).")
        return 0, 0

    automation = collect_automation(events, channels)
    written = failed = 0
    for number, voice in enumerate(voices, start=1):
        label = f"voice{number}"
        log.info("   Voice %d notes: %d", number, len(voice))
        if not voice:
            continue
        path = os.path.join(out_dir, f"{base_name}-track{track_index}-{instrument}-{label}.mid")
        if _write_group(voice, label, path, global_meta, automation, ticks_per_beat):
            written += 1
        else:
            failed += 1
    return written, failed


def split_track(
    info: dict,
    events: list[tuple[int, bytes]],
    global_meta: list[tuple[int, bytes]],
    out_dir: str,
    stem: str,
    ticks_per_beat: int,
) -> tuple[int, int]:
    index = info["index"]
    if info["has_drum_channel"]:
        return split_drum_track(events, global_meta, out_dir, f"{stem}-track{index}", ticks_per_beat)

    spans = extract_note_spans(events)
    log.info("  Pre-check notes: %d", len(spans))
    if not spans:
        log.info("  No notes, skip.")
        return 0, 0

    program = info["program_guess"]
    instrument = sanitize_filename(GM_NAMES[program]) if program is not None else DEFAULT_INSTRUMENT
    return split_voice_track(events, spans, global_meta, out_dir, stem, index, instrument, ticks_per_beat)


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def _app_dir() -> str:
    if getattr(sys, "frozen", False):
        return os.path.dirname(sys.executable)
    return os.getcwd()


def _setup_logging(candidates: list[str]) -> str | None:
    log.setLevel(logging.INFO)
    log.propagate = False
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter("%(message)s"))
    log.addHandler(console)

    for path in candidates:
        try:
            fh = logging.FileHandler(path, mode="w", encoding="utf-8")
        except OSError:
            continue
        fh.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        log.addHandler(fh)
        return path
    return None


def _close_logging() -> None:
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()


def _open_folder(path: str) -> None:
    try:
        if sys.platform.startswith("win"):
            os.startfile(path)
        elif sys.platform == "darwin":
            subprocess.run(["open", path], check=False)
        else:
            subprocess.run(["xdg-open", path], check=False)
    except OSError as exc:
        log.warning("Could not open folder %s: %s", path, exc)


def _strip_quotes(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        return text[1:-1]
    return text


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Split MIDI tracks into per-voice files and drums/cymbals files"
    )
    parser.add_argument("input_mid", nargs="?", help="Input MIDI file (prompted when omitted)")
    parser.add_argument("--mode", help="1 = single track, 2 = all tracks (prompted when omitted)")
    parser.add_argument("--track", help="Track index for single track mode (prompted when omitted)")
    parser.add_argument(
        "--log",
        dest="log_path",
        default="",
        help=f"Run log path (default: {LOG_FILENAME} in the app folder, else beside the input)",
    )
    parser.add_argument(
        "--open-folder",
        action="store_true",
        default=False,
        help="Open the output folder when done",
    )
    return parser.parse_args(argv[1:])


def _run(args: argparse.Namespace, input_mid: str, log_path: str | None) -> int:
    src_dir = os.path.dirname(os.path.abspath(input_mid))
    stem = os.path.splitext(os.path.basename(input_mid))[0]

    log.info("=== MIDI Voice Separation ===")
    log.info("Log: %s", log_path or "(console only)")

    try:
        mid = mido.MidiFile(input_mid)
    except (OSError, EOFError, ValueError, KeyError, mido.KeySignatureError) as exc:
        print("Failed to read MIDI.", file=sys.stderr)
        log.error("Failed to read MIDI: %s (%s)", input_mid, exc)
        return 1
    if mid.type not in (0, 1):
        print("Error: unsupported MIDI type. Use Type 0 or Type 1.", file=sys.stderr)
        log.error("Unsupported MIDI type %d: %s", mid.type, input_mid)
        return 1

    all_events = [track_events(track) for track in mid.tracks]
    log.info("Input file: %s", input_mid)
    log.info("TicksPerQuarter: %d", mid.ticks_per_beat)
    log.info("Tracks: %d", len(all_events))

    infos = scan_track_info(all_events)
    for info in infos:
        name = f" | Name: {info['name']}" if info["name"] else ""
        log.info(
            "Track %d | events=%d%s | %s",
            info["index"], info["event_count"], name, instrument_label(info),
        )

    mode = args.mode
    if mode is None:
        print()
        print("Split a single track or all tracks?")
        print("  1 = Single selected track")
        print("  2 = All tracks (includes drum split)")
        mode = input("Choose 1 or 2: ")
    single = mode.strip() == "1"

    out_dir = src_dir if single else os.path.join(src_dir, stem + SPLIT_DIR_SUFFIX)
    if not single:
        log.info("Output folder: %s", out_dir)

    global_meta = collect_global_meta(all_events)
    log.info("Global metas copied: %d", len(global_meta))

    written = failed = 0
    if single:
        track_text = args.track
        if track_text is None:
            track_text = input("Enter the track number to split: ")
        try:
            index = int(track_text.strip())
        except ValueError:
            index = -1
        if not 0 <= index < len(infos):
            print("Invalid track.", file=sys.stderr)
            log.error("Invalid track selected: %r", track_text)
            return 1
        log.info("Selected track: %d", index)
        written, failed = split_track(
            infos[index], all_events[index], global_meta, out_dir, stem, mid.ticks_per_beat
        )
    else:
        for info in infos:
            if info["event_count"] <= 0:
                continue
            kind = "drums" if info["has_drum_channel"] else "inst"
            log.info("")
            log.info("Processing track %d (%s)...", info["index"], kind)
            w, f = split_track(
                info, all_events[info["index"]], global_meta, out_dir, stem, mid.ticks_per_beat
            )
            written += w
            failed += f

    log.info("")
    log.info("Files written: %d, failed: %d", written, failed)
    log.info("Done.")

    if args.open_folder:
        _open_folder(out_dir)
    return 0


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv
    args = _parse_args(argv)

    input_mid = args.input_mid
    if input_mid is None:
        input_mid = input("Enter full path to a MIDI file (.mid): ")
    input_mid = _strip_quotes(input_mid)
    if not os.path.isfile(input_mid):
        print("File not found.", file=sys.stderr)
        return 1

    if args.log_path:
        candidates = [args.log_path]
    else:
        src_dir = os.path.dirname(os.path.abspath(input_mid))
        candidates = [os.path.join(_app_dir(), LOG_FILENAME), os.path.join(src_dir, LOG_FILENAME)]
    log_path = _setup_logging(candidates)
    try:
        return _run(args, input_mid, log_path)
    finally:
        _close_logging()


if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
