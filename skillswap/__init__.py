"""SkillSwap client-side data synchronization layer."""
