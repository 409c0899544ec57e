"""Pipeline stages: acquire, extract frames, read on-screen text, synthesize."""
