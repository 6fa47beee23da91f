"""sourceflow crawl package — fetching, BFS crawling, progressive persistence."""
