from pathlib import Path

import mido
import pytest

from midi_voice_split import main, sanitize_filename

VOICE1 = "song-track1-Acoustic Grand Piano-voice1.mid"
VOICE2 = "song-track1-Acoustic Grand Piano-voice2.mid"


@pytest.fixture
def song(make_midi) -> Path:
    conductor = [
        (0, mido.MetaMessage("track_name", name="Conductor")),
        (0, mido.MetaMessage("set_tempo", tempo=500000)),
        (0, mido.MetaMessage("time_signature", numerator=4, denominator=4)),
        (0, mido.MetaMessage("key_signature", key="D")),
    ]
    piano = [
        (0, mido.MetaMessage("track_name", name="Piano")),
        (0, mido.Message("program_change", channel=0, program=0)),
        (0, mido.Message("control_change", channel=0, control=7, value=100)),
        (0, mido.Message("note_on", channel=0, note=60, velocity=100)),
        (50, mido.Message("note_on", channel=0, note=64, velocity=90)),
        (100, mido.Message("note_off", channel=0, note=60, velocity=0)),
        (150, mido.Message("note_on", channel=0, note=64, velocity=0)),
    ]
    drums = [
        (0, mido.Message("control_change", channel=9, control=10, value=20)),
        (0, mido.Message("note_on", channel=9, note=36, velocity=110)),
        (0, mido.Message("note_on", channel=9, note=49, velocity=120)),
        (60, mido.Message("note_off", channel=9, note=36, velocity=0)),
        (120, mido.Message("note_off", channel=9, note=49, velocity=0)),
    ]
    empty = [(0, mido.MetaMessage("track_name", name="Empty"))]
    return make_midi([conductor, piano, drums, empty])


def _run(*args: str) -> int:
    return main(["midi-voice-split", *args])


def test_all_tracks_mode_writes_voices_and_drum_buckets(song: Path, tmp_path: Path, read_notes) -> None:
    log_path = tmp_path / "run.log"
    assert _run(str(song), "--mode", "2", "--log", str(log_path)) == 0

    out_dir = tmp_path / "song - Split chords"
    assert sorted(p.name for p in out_dir.iterdir()) == sorted(
        [VOICE1, VOICE2, "song-track2-drums.mid", "song-track2-cymbals.mid"]
    )
    assert read_notes(out_dir / VOICE1) == [(50, "note_on", 64, 90, 0), (150, "note_off", 64, 64, 0)]
    assert read_notes(out_dir / VOICE2) == [(0, "note_on", 60, 100, 0), (100, "note_off", 60, 64, 0)]
    assert [n[2] for n in read_notes(out_dir / "song-track2-drums.mid")] == [36, 36]
    assert [n[2] for n in read_notes(out_dir / "song-track2-cymbals.mid")] == [49, 49]

    text = log_path.read_text(encoding="utf-8")
    assert "No notes, skip." in text
    assert "Done." in text


def test_voice_file_carries_meta_and_automation(song: Path, tmp_path: Path) -> None:
    assert _run(str(song), "--mode", "2", "--log", str(tmp_path / "run.log")) == 0

    mid = mido.MidiFile(tmp_path / "song - Split chords" / VOICE2)
    assert mid.type == 0
    assert mid.ticks_per_beat == 480
    types = [msg.type for msg in mid.tracks[0]]
    assert types[:5] == ["set_tempo", "time_signature", "key_signature", "program_change", "control_change"]
    assert types.count("end_of_track") == 1
    assert types[-1] == "end_of_track"
    assert "track_name" not in types


def test_drum_bucket_replays_drum_channel_automation(song: Path, tmp_path: Path) -> None:
    assert _run(str(song), "--mode", "2", "--log", str(tmp_path / "run.log")) == 0

    mid = mido.MidiFile(tmp_path / "song - Split chords" / "song-track2-cymbals.mid")
    controls = [msg for msg in mid.tracks[0] if msg.type == "control_change"]
    assert [(c.channel, c.control, c.value) for c in controls] == [(9, 10, 20)]


def test_single_track_mode_writes_beside_input(song: Path, tmp_path: Path) -> None:
    assert _run(str(song), "--mode", "1", "--track", "2", "--log", str(tmp_path / "run.log")) == 0

    assert (tmp_path / "song-track2-drums.mid").is_file()
    assert (tmp_path / "song-track2-cymbals.mid").is_file()
    assert not (tmp_path / "song - Split chords").exists()
    assert not (tmp_path / VOICE1).exists()


def test_unknown_mode_means_all_tracks(song: Path, tmp_path: Path) -> None:
    assert _run(str(song), "--mode", "x", "--log", str(tmp_path / "run.log")) == 0
    assert (tmp_path / "song - Split chords" / VOICE1).is_file()


def test_runs_are_repeatable(song: Path, tmp_path: Path, read_notes) -> None:
    out_dir = tmp_path / "song - Split chords"
    assert _run(str(song), "--mode", "2", "--log", str(tmp_path / "run.log")) == 0
    first = {p.name: read_notes(p) for p in out_dir.iterdir()}
    assert _run(str(song), "--mode", "2", "--log", str(tmp_path / "run.log")) == 0
    second = {p.name: read_notes(p) for p in out_dir.iterdir()}
    assert first == second


@pytest.mark.parametrize("track", ["9", "-1", "abc"])
def test_invalid_track_is_fatal(song: Path, tmp_path: Path, track: str) -> None:
    assert _run(str(song), "--mode", "1", "--track", track, "--log", str(tmp_path / "run.log")) == 1
    assert sorted(p.name for p in tmp_path.iterdir()) == ["run.log", "song.mid"]


def test_missing_input_is_fatal(tmp_path: Path) -> None:
    assert _run(str(tmp_path / "nope.mid"), "--mode", "2") == 1


def test_unreadable_midi_is_fatal(tmp_path: Path) -> None:
    bad = tmp_path / "bad.mid"
    bad.write_bytes(b"not a midi file at all")
    log_path = tmp_path / "run.log"
    assert _run(str(bad), "--mode", "2", "--log", str(log_path)) == 1
    assert "Failed to read MIDI" in log_path.read_text(encoding="utf-8")


def test_write_failure_is_logged_and_not_fatal(song: Path, tmp_path: Path) -> None:
    (tmp_path / "song - Split chords").write_text("in the way")
    log_path = tmp_path / "run.log"

    assert _run(str(song), "--mode", "2", "--log", str(log_path)) == 0

    text = log_path.read_text(encoding="utf-8")
    assert text.count("write failed") == 4
    assert "Files written: 0, failed: 4" in text


def test_prompts_when_arguments_missing(song: Path, tmp_path: Path, monkeypatch) -> None:
    answers = iter([f'"{song}"', "1", "1"])
    monkeypatch.setattr("builtins.input", lambda _prompt="": next(answers))

    assert _run("--log", str(tmp_path / "run.log")) == 0
    assert (tmp_path / VOICE1).is_file()
    assert (tmp_path / VOICE2).is_file()


def test_sanitize_filename() -> None:
    assert sanitize_filename("Acoustic Grand Piano") == "Acoustic Grand Piano"
    assert sanitize_filename("Acoustic Guitar (nylon)") == "Acoustic Guitar _nylon"
    assert sanitize_filename("Lead 8 (bass + lead)") == "Lead 8 _bass _ lead"
    assert sanitize_filename("Honky-tonk Piano") == "Honky-tonk Piano"
    assert sanitize_filename("") == "Instrument"
    assert sanitize_filename(" _()_ ") == "Instrument"


def test_track_without_program_uses_instrument_name(make_midi, tmp_path: Path) -> None:
    path = make_midi(
        [
            [
                (0, mido.Message("note_on", channel=0, note=60, velocity=100)),
                (100, mido.Message("note_off", channel=0, note=60, velocity=0)),
            ]
        ],
        name="plain.mid",
    )
    log_path = tmp_path / "run.log"

    assert _run(str(path), "--mode", "1", "--track", "0", "--log", str(log_path)) == 0

    assert (tmp_path / "plain-track0-Instrument-voice1.mid").is_file()
    assert "Track 0 | events=3 | Unknown" in log_path.read_text(encoding="utf-8")


def test_type_2_file_is_rejected(tmp_path: Path) -> None:
    mid = mido.MidiFile(type=2)
    for note in (60, 64):
        mid.tracks.append(
            mido.MidiTrack(
                [
                    mido.Message("note_on", note=note, velocity=100, time=0),
                    mido.Message("note_off", note=note, velocity=0, time=100),
                ]
            )
        )
    path = tmp_path / "patterns.mid"
    mid.save(path)
    log_path = tmp_path / "run.log"

    assert _run(str(path), "--mode", "2", "--log", str(log_path)) == 1

    assert "Unsupported MIDI type 2" in log_path.read_text(encoding="utf-8")
    assert not (tmp_path / "patterns - Split chords").exists()
