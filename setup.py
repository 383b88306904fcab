import io
import os
from setuptools import setup

def read(name):
    file_path = os.path.join(os.path.dirname(__file__), name)
    return io.open(file_path, encoding='utf8').read()

setup(
    name='aiodrc',
    version='0.1.0',
    description="Package for accessing Docker v2 (and v1) registries with content verification",
    long_description=read('README.md'),
    long_description_content_type='text/markdown',
    keywords='docker registry oci manifest',
    license='MIT',
    packages=['aiodrc'],
    python_requires='>=3.7',
    entry_points={'console_scripts': ['aiodrc=aiodrc.main:main']},
    install_requires=['www-authenticate>=0.9.2',
                      'aiohttp>=3.6.2',
                      'yarl>=1.4',
                      'jwcrypto>=0.4.2',
                      'tqdm>=4.19.4'],
    extras_require={'test': ['pytest>=5',
                             'pytest-asyncio>=0.14']}
)
