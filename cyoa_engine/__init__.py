"""Interactive-fiction turn engine: streamed game-master replies, inline
directive tags, single-step undo and versioned saved sessions."""
