"""Orchestration subpackage: crawl job lifecycle, scheduling and the facade."""
