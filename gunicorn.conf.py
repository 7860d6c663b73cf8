import multiprocessing


bind = "0.0.0.0:8000"
workers = max(2, multiprocessing.cpu_count() + 1)
# Each progress stream holds a thread for up to PROGRESS_STREAM_MAX_SECONDS.
worker_class = "gthread"
threads = 8
timeout = 660
graceful_timeout = 30
keepalive = 5
accesslog = "-"
errorlog = "-"
wsgi_app = "backoffice:create_app()"
