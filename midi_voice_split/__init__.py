"""Split MIDI tracks into per-voice and drums/cymbals files."""

from .midi_voice_split import (
    CYMBAL_NOTES,
    GM_NAMES,
    assign_voices,
    build_output,
    collect_automation,
    collect_global_meta,
    extract_note_spans,
    main,
    sanitize_filename,
    scan_track_info,
    split_drums,
    track_events,
)

__version__ = "0.1.0"
