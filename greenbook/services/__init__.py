# Services package.
#
# Each module exposes a focused set of async functions (or, for toggles,
# a coordinator object) for a single concern:
#
#   toggle_kinds     : article-like / article-favorite / comment-like bindings
#   toggle_service   : Redis-gated toggles with detached SQL persistence
#   background       : per-key serialized detached jobs
#   reconcile_service: rebuild counters and Redis state from live records
#   article_service  : CRUD + pagination + cache for Article
#   comment_service  : comment creation and listing
#   user_service     : registration, login, WeChat login, profiles
#   follow_service   : follow / unfollow and relationship lists
#
# Request-scoped functions take an AsyncSession as their first argument so
# the router layer controls the transaction boundary via ``get_db``.
