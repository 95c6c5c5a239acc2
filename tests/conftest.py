import os
import tempfile

# Point the app at a throwaway database before quizdesk.database is imported.
_db_dir = tempfile.mkdtemp(prefix="quizdesk-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'quizdesk.db')}"
os.environ.pop("QUIZDESK_AUTOSAVE_ORDERING", None)
os.environ.pop("QUIZDESK_DUPLICATE_NORMALIZATION", None)
