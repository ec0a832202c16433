from setuptools import setup
from pathlib import Path

setup(
    name='lazistream',
    url='https://github.com/jeffmomo/lazistream',
    author='Jeff Mo',
    description='Lazy, single-use streams with collectors and parallel evaluation',
    long_description=(Path(__file__).parent/'README.md').open('r').read(),
    long_description_content_type='text/markdown',
    version='0.1.0',
    py_modules=['lazistream'],
    python_requires='>=3.7',
    install_requires=[
        'multiprocess',
    ],
    extras_require={
        'test': [
            'pytest',
            'hypothesis',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
