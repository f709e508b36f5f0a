from ._logging import (
    logger as logger,
)
from ._logging import (
    set_log_level as set_log_level,
)
from .archive import (
    RandomAccessGselectReader as RandomAccessGselectReader,
)
from .archive import (
    RandomAccessVectorReader as RandomAccessVectorReader,
)
from .archive import (
    SequentialMatrixReader as SequentialMatrixReader,
)
from .archive import (
    write_gselect_archive as write_gselect_archive,
)
from .archive import (
    write_matrix_archive as write_matrix_archive,
)
from .archive import (
    write_vector_archive as write_vector_archive,
)
from .io import (
    read_accs as read_accs,
)
from .io import (
    read_gmm as read_gmm,
)
from .io import (
    write_accs as write_accs,
)
from .io import (
    write_gmm as write_gmm,
)
from .simulation import generate_toy_data as generate_toy_data
from .simulation import generate_toy_gmm as generate_toy_gmm
