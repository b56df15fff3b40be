"""Module __init__: the browser-driven end-to-end suite."""
#
# KEY MODULES:
# - **selector.py**: TEST_SELECTOR parsing and matching
# - **cases.py**: test cases, outcomes and the case registry
# - **webdriver.py**: W3C WebDriver client for the browser grid
# - **engine.py**: worker pool, max-fail threshold, coverage merge
# - **checks.py**: the built-in checks against the application under test
#
