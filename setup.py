from setuptools import setup, find_namespace_packages

setup(
    name='scatac_data_processing',
    version='0.1',
    packages=find_namespace_packages(include=['scatac_data_processing', 'scatac_data_processing.*']),
    package_data={
        'scatac_data_processing.config': ['*.yaml'],
    },
    python_requires='>=3.9',
    install_requires=[
        'numpy',
        'pandas',
        'scipy',
        'pyranges<1.0',
        'pyfaidx',
        'biopython',
        'MOODS-python',
        'seqlogo',
        'pyjaspar',
        'pyyaml',
        'tqdm',
        'pyarrow',
        'scikit-learn',
        'statsmodels',
        'anndata',
        'mudata>=0.3',
        'scanpy',
        'leidenalg',
        'pychromvar',
        'matplotlib',
        'seaborn',
    ],
    extras_require={
        'test': ['pytest'],
    },
)
