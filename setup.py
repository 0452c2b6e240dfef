from setuptools import find_packages
from setuptools import setup

version = '0.4.0'

install_requires = [
    'ConfigArgParse>=1.5.3',
    'azure-core>=1.29.0',
    'azure-identity>=1.15.0',
    'azure-keyvault-keys>=4.8.0',
    'cryptography>=43.0.0',
    'josepy>=1.13.0',
    'pyrfc3339',
    'requests>=2.20.0',
]

test_extras = [
    'pytest',
    'pytest-xdist',
]

setup(
    name='kmsacme',
    version=version,
    description='ACME certificate issuance with account keys held in a KMS',
    license='Apache License 2.0',
    python_requires='>=3.9',
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: Apache Software License',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Programming Language :: Python :: 3.13',
        'Topic :: Internet :: WWW/HTTP',
        'Topic :: Security',
    ],

    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    include_package_data=True,
    install_requires=install_requires,
    extras_require={
        'test': test_extras,
    },
    entry_points={
        'console_scripts': [
            'kmsacme = kmsacme.main:main',
        ],
    },
)
