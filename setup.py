import io
import os
from setuptools import setup

def read(name):
    file_path = os.path.join(os.path.dirname(__file__), name)
    return io.open(file_path, encoding='utf8').read()

setup(
    name='python-cisetup',
    version='1.0.0',
    description="Bootstrap ephemeral registry and Nexus infrastructure for CI jobs",
    long_description=read('README.rst'),
    keywords='ci docker registry nexus nginx',
    license='MIT',
    packages=['cisetup'],
    package_data={"cisetup": ["py.typed"]},
    entry_points={'console_scripts': ['cisetup=cisetup.main:main']},
    install_requires=['www-authenticate>=0.9.2',
                      'requests>=2.18.4',
                      'tqdm>=4.19.4',
                      'python-gnupg>=0.5.0'],
    extras_require={'test': ['pytest',
                             'responses>=0.22.0',
                             'pyyaml']},
    python_requires='>=3.7'
)
