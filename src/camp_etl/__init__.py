"""camp_etl: scrape health, scheduling and import pipeline for camp listings."""
