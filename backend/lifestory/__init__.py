"""LifeStory conversation engine backend."""
