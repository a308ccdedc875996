from pathlib import Path

import mido
import pytest


def _to_track(events: list[tuple[int, mido.Message]]) -> mido.MidiTrack:
    track = mido.MidiTrack()
    prev = 0
    for tick, msg in sorted(events, key=lambda ev: ev[0]):
        track.append(msg.copy(time=tick - prev))
        prev = tick
    return track


@pytest.fixture
def make_midi(tmp_path: Path):
    """Write a type 1 file from tracks given as (absolute_tick, message) lists."""

    def _make(tracks: list[list[tuple[int, mido.Message]]], name: str = "song.mid", tpb: int = 480) -> Path:
        mid = mido.MidiFile(type=1, ticks_per_beat=tpb)
        for events in tracks:
            mid.tracks.append(_to_track(events))
        path = tmp_path / name
        mid.save(path)
        return path

    return _make


def _read_notes(path: Path) -> list[tuple[int, str, int, int, int]]:
    """(absolute_tick, type, note, velocity, channel) for every note message."""
    mid = mido.MidiFile(path)
    out = []
    for track in mid.tracks:
        tick = 0
        for msg in track:
            tick += msg.time
            if msg.type in ("note_on", "note_off"):
                out.append((tick, msg.type, msg.note, msg.velocity, msg.channel))
    return out


@pytest.fixture
def read_notes():
    return _read_notes
