"""Ad copy generation for Meta campaigns: heuristic native copy and OpenAI-backed ideas."""
