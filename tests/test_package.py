import subprocess
import sys

import sncompare


def test_top_level_import_defers_scanpy():
    code = (
        "import sys, sncompare; "
        "assert 'scanpy' not in sys.modules, 'scanpy imported eagerly'; "
        "sncompare.filter_cells; "
        "assert 'scanpy' in sys.modules"
    )
    subprocess.run([sys.executable, "-c", code], check=True)


def test_lazy_names_resolve():
    from sncompare.qc import QCBounds

    assert sncompare.QCBounds is QCBounds
    assert set(sncompare._LAZY) <= set(sncompare.__all__)
