# Root conftest. Under the default "prepend" import mode pytest inserts this
# file's directory into sys.path when it loads it, so the tests can import
# the rosca_chain namespace package without an install.
